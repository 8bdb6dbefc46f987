"""
Storage collaborator and the single mutual-exclusion queue in front of it.

JsonStore mirrors the extension's key-value store: a snapshot dict with
folders, chats, workspaces, snippets and settings, saved as one JSON file in
the knowledge-base folder. `save(partial)` replaces whole top-level keys.

StoreWriter serializes every read-modify-write sequence (acquire, read
latest, modify, write, release) so that concurrent extraction results and
surrogate migrations never overwrite each other.
"""
import asyncio
import copy
import json
import logging
import os

from .utils import ensure_directory, now_ms

log = logging.getLogger(__name__)

DEFAULT_DATA = {
    "workspaces": [],
    "activeWorkspaceId": "",
    "folders": [],
    "chats": {},
    "snippets": [],
    "settings": {"theme": "dark"},
}


class JsonStore:
    def __init__(self, root, filename="store.json"):
        ensure_directory(root)
        self.path = os.path.join(root, filename)

    def _load(self):
        data = copy.deepcopy(DEFAULT_DATA)
        if not os.path.exists(self.path):
            return data
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.error("[Store] Failed to load %s: %s", self.path, e)
            return data
        if isinstance(loaded, dict):
            data.update(loaded)
        return data

    async def get(self):
        return self._load()

    async def save(self, partial):
        data = self._load()
        data.update(partial)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)


class StoreWriter:
    """
    Usage:
        writer = StoreWriter(JsonStore(kb_root))
        await writer.mutate(lambda snapshot: {"chats": ...})
    """

    def __init__(self, store):
        self.store = store
        self._lock = asyncio.Lock()

    async def get(self):
        """Latest snapshot, read through the queue."""
        async with self._lock:
            return await self.store.get()

    async def mutate(self, fn):
        """
        Runs fn(snapshot) under the lock. fn edits the snapshot copy and
        returns the partial to save, or None to leave the store untouched.
        """
        async with self._lock:
            snapshot = await self.store.get()
            partial = fn(snapshot)
            if partial:
                await self.store.save(partial)
            return partial

    # --- chat content ---------------------------------------------------------

    async def update_chat_content(self, chat_id, content, title=None, url=None):
        """Last write wins: the new extraction replaces any previous content."""
        def apply(snapshot):
            chats = snapshot["chats"]
            chat = dict(chats.get(chat_id) or {"id": chat_id, "title": title or "", "timestamp": now_ms()})
            if title and not chat.get("title"):
                chat["title"] = title
            if url and not chat.get("url"):
                chat["url"] = url
            chat["content"] = content.text
            chat["turnCount"] = content.turn_count
            chat["lastSynced"] = now_ms()
            chats[chat_id] = chat
            return {"chats": chats}

        await self.mutate(apply)
        log.info("[Store] Saved %d turns for chat %s", content.turn_count, chat_id)


def folder_subtree(snapshot, folder_id):
    """The folder and all of its descendants, parents first."""
    by_parent = {}
    for folder in snapshot["folders"]:
        by_parent.setdefault(folder.get("parentId"), []).append(folder)
    root = next((f for f in snapshot["folders"] if f["id"] == folder_id), None)
    if root is None:
        return []
    result, stack, seen = [], [root], set()
    while stack:
        folder = stack.pop(0)
        if folder["id"] in seen:
            continue
        seen.add(folder["id"])
        result.append(folder)
        stack.extend(by_parent.get(folder["id"], []))
    return result
