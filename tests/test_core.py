import asyncio

import pytest
import pytest_asyncio
from conftest import FakeDriver, FakeSurface, chatty_surface

from gem_projects.core import Coordinator
from gem_projects.messages import (
    ChatSendRequest, ChatSendResponse, CloseChatRequest, LivenessAck, LivenessProbe,
)
from gem_projects.prompts import CONTEXT_HEADER, FOLDER_TREE_PREFIX, PERSONA_HEADER


@pytest_asyncio.fixture
async def seeded(store):
    await store.save({
        "workspaces": [{"id": "w1", "name": "Personal", "defaultPrompt": "Answer like a travel agent"}],
        "folders": [
            {"id": "f1", "workspaceId": "w1", "name": "Travel", "parentId": None, "chatIds": ["c1"]},
            {"id": "f2", "workspaceId": "w1", "name": "Japan", "parentId": "f1", "chatIds": ["c2", "c3"]},
        ],
        "chats": {
            "c1": {"id": "c1", "title": "Budget", "content": "Budget is 2000 EUR"},
            "c2": {"id": "c2", "title": "Kyoto", "content": "Stay near the station"},
            "c3": {"id": "c3", "title": "Not indexed yet"},
        },
    })
    return store


def make_coordinator(settings, store, driver=None):
    return Coordinator(settings, driver or FakeDriver(factory=chatty_surface), store=store)


@pytest.mark.asyncio
async def test_ping_is_answered(settings, store):
    coordinator = make_coordinator(settings, store)
    assert await coordinator.handle(LivenessProbe("p1")) == LivenessAck("p1")


@pytest.mark.asyncio
async def test_folder_chat_seeds_context_once(settings, seeded):
    coordinator = make_coordinator(settings, seeded)
    try:
        first = await coordinator.handle(ChatSendRequest("r1", "f1", "How much can we spend?"))
        second = await coordinator.handle(ChatSendRequest("r2", "f1", "Where do we sleep?"))
    finally:
        await coordinator.shutdown()

    assert first == ChatSendResponse("r1", True, text="Answer to: How much can we spend?", chat_id="c_real42")
    assert second.success and second.text == "Answer to: Where do we sleep?"

    surface = coordinator.driver.opened[0]
    seed = surface.submitted[0]
    assert seed.startswith(PERSONA_HEADER)
    assert "Answer like a travel agent" in seed
    assert CONTEXT_HEADER in seed
    assert f'{FOLDER_TREE_PREFIX} "Travel"' in seed
    assert "Budget is 2000 EUR" in seed
    assert "Stay near the station" in seed
    assert "Not indexed yet" not in seed
    assert surface.submitted[1] == "Where do we sleep?"
    assert len(coordinator.correlator) == 0


@pytest.mark.asyncio
async def test_explicit_context_wins_over_store(settings, seeded):
    coordinator = make_coordinator(settings, seeded)
    try:
        await coordinator.handle(ChatSendRequest("r1", "f2", "Hi", context="Custom context"))
    finally:
        await coordinator.shutdown()

    seed = coordinator.driver.opened[0].submitted[0]
    assert "Custom context" in seed
    assert "Stay near the station" not in seed


@pytest.mark.asyncio
async def test_unavailable_session_becomes_failed_response(settings, store):
    driver = FakeDriver()
    driver.fail_open = True
    coordinator = make_coordinator(settings, store, driver)
    try:
        response = await coordinator.handle(ChatSendRequest("r1", "f1", "Hello"))
    finally:
        await coordinator.shutdown()

    assert response.success is False
    assert "unavailable" in response.error
    assert "f1" not in coordinator.sessions


@pytest.mark.asyncio
async def test_unanswered_request_times_out(settings, store):
    settings.request_timeout = 0.1
    settings.exchange_extensions = 1000
    coordinator = make_coordinator(settings, store, FakeDriver())
    try:
        response = await coordinator.handle(ChatSendRequest("r1", "f1", "Hello?"))
    finally:
        await coordinator.shutdown()

    assert response.success is False
    assert "timed out" in response.error


@pytest.mark.asyncio
async def test_close_chat_request_closes_session(settings, store):
    coordinator = make_coordinator(settings, store)
    try:
        await coordinator.handle(ChatSendRequest("r1", "f1", "Hello"))
        surface = coordinator.sessions.get("f1").surface
        await coordinator.handle(CloseChatRequest("f1"))
    finally:
        await coordinator.shutdown()

    assert surface.closed
    assert "f1" not in coordinator.sessions


@pytest.mark.asyncio
async def test_stray_response_is_ignored(settings, store):
    coordinator = make_coordinator(settings, store)
    try:
        assert await coordinator.handle(ChatSendResponse("nobody", True, text="?")) is None
    finally:
        await coordinator.shutdown()


@pytest.mark.asyncio
async def test_request_timeout_cuts_short_a_page_that_never_loads(settings, store):
    settings.request_timeout = 0.1
    settings.session_load_timeout = 5
    driver = FakeDriver(factory=lambda url: FakeSurface(url=url, ready_states=("loading",)))
    coordinator = make_coordinator(settings, store, driver)
    loop = asyncio.get_running_loop()
    try:
        started = loop.time()
        response = await coordinator.handle(ChatSendRequest("r1", "f1", "Hello?"))
        elapsed = loop.time() - started
        await asyncio.sleep(0.01)
    finally:
        await coordinator.shutdown()

    assert response.success is False
    assert "timed out" in response.error
    assert elapsed < 1
    assert "f1" not in coordinator.sessions
    assert driver.live == []
