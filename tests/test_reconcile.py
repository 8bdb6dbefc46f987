import pytest

from gem_projects.reconcile import (
    Reconciler, find_chat_by_title, is_surrogate, normalize_title, surrogate_id, titles_match,
)


def test_surrogate_id_is_deterministic_on_normalized_title():
    assert surrogate_id("Trip Plan!") == surrogate_id("  trip   plan ")
    assert surrogate_id("Trip Plan") != surrogate_id("Trip Plans 2")
    assert is_surrogate(surrogate_id("Trip Plan"))
    assert not is_surrogate("c_81f0a2b9")
    assert normalize_title("Hello, World?") == "hello world"


@pytest.mark.parametrize("a, b, expected", [
    ("Trip Plan", "trip plan", True),
    ("Trip Plan", "Trip Plan for Kyoto", True),
    ("Quarterly budget review for marketing", "Quarterly budget review (draft)", True),
    ("Trip", "Trip to the moon", False),
    ("Recipes", "Tax return", False),
    ("", "anything", False),
])
def test_titles_match(a, b, expected):
    assert titles_match(a, b) is expected


def test_find_chat_by_title_prefers_exact_match():
    chats = {
        "a": {"title": "Trip Plan for Kyoto"},
        "b": {"title": "Trip Plan"},
    }
    assert find_chat_by_title(chats, "trip plan") == "b"
    assert find_chat_by_title(chats, "Tax return") is None


async def _seed(writer, snapshot):
    await writer.store.save(snapshot)


@pytest.mark.asyncio
async def test_migrate_rewrites_both_folders(writer):
    await _seed(writer, {
        "folders": [
            {"id": "f1", "name": "Travel", "chatIds": ["chat_x9f2", "other"]},
            {"id": "f2", "name": "Japan", "chatIds": ["chat_x9f2"]},
        ],
        "chats": {
            "chat_x9f2": {"id": "chat_x9f2", "title": "Trip Plan", "content": "old notes", "tags": ["travel"]},
        },
    })
    reconciler = Reconciler(writer)

    assert await reconciler.migrate("chat_x9f2", "realId123", "Trip Plan") is True

    snapshot = await writer.get()
    assert "chat_x9f2" not in snapshot["chats"]
    real = snapshot["chats"]["realId123"]
    assert real["content"] == "old notes"
    assert real["tags"] == ["travel"]
    assert real["url"] == "https://gemini.google.com/app/realId123"
    assert snapshot["folders"][0]["chatIds"] == ["realId123", "other"]
    assert snapshot["folders"][1]["chatIds"] == ["realId123"]
    assert reconciler.resolve("chat_x9f2") == "realId123"


@pytest.mark.asyncio
async def test_migrate_keeps_existing_real_content(writer):
    await _seed(writer, {
        "folders": [{"id": "f1", "name": "Travel", "chatIds": ["chat_x9f2", "realId123"]}],
        "chats": {
            "chat_x9f2": {"id": "chat_x9f2", "title": "Trip Plan", "content": "stale", "pinned": True},
            "realId123": {"id": "realId123", "title": "Trip Plan", "content": "fresh", "tags": ["kyoto"]},
        },
    })

    await Reconciler(writer).migrate("chat_x9f2", "realId123")

    snapshot = await writer.get()
    real = snapshot["chats"]["realId123"]
    assert real["content"] == "fresh"
    assert real["pinned"] is True
    assert real["tags"] == ["kyoto"]
    assert snapshot["folders"][0]["chatIds"] == ["realId123"]


@pytest.mark.asyncio
async def test_migrate_is_idempotent(writer):
    await _seed(writer, {
        "folders": [{"id": "f1", "name": "Travel", "chatIds": ["chat_x9f2"]}],
        "chats": {"chat_x9f2": {"id": "chat_x9f2", "title": "Trip Plan"}},
    })
    reconciler = Reconciler(writer)

    assert await reconciler.migrate("chat_x9f2", "realId123") is True
    first = await writer.get()
    assert await reconciler.migrate("chat_x9f2", "realId123") is False
    assert await writer.get() == first


@pytest.mark.asyncio
async def test_migrate_without_surrogate_record_is_skipped(writer):
    reconciler = Reconciler(writer)
    assert await reconciler.migrate("chat_missing", "realId123") is False
    assert reconciler.resolve("chat_missing") == "chat_missing"


@pytest.mark.asyncio
async def test_match_known_folds_surrogate_into_indexed_chat(writer):
    await _seed(writer, {
        "folders": [{"id": "f1", "name": "Travel", "chatIds": ["chat_x9f2"]}],
        "chats": {
            "chat_x9f2": {"id": "chat_x9f2", "title": "Trip Plan"},
            "realId123": {"id": "realId123", "title": "Trip plan!", "content": "indexed"},
        },
    })
    reconciler = Reconciler(writer)

    assert await reconciler.match_known("chat_x9f2", "Trip Plan") == "realId123"
    assert await reconciler.match_known("chat_other", "Tax return") is None

    snapshot = await writer.get()
    assert snapshot["folders"][0]["chatIds"] == ["realId123"]
    assert reconciler.resolve("chat_x9f2") == "realId123"
