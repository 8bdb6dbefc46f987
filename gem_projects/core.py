# ==============================================================================
# Coordinator
# ==============================================================================
"""
Owns every stateful component (store writer, sessions, pending requests,
work queue, archiver) for one process and routes protocol messages
between them.
"""
import asyncio
import logging

from .archiver import Archiver
from .correlator import RequestCorrelator
from .errors import ExtractionEmpty, RequestTimeout, SessionUnavailable, SurfaceError
from .extractor import ContentExtractor
from .indexer import IndexingAgent
from .messages import (
    ChatSendRequest, ChatSendResponse, CloseChatRequest, DiscoveryComplete,
    ExtractionComplete, IndexRequest, LivenessAck, LivenessProbe,
)
from .prompts import build_folder_context
from .reconcile import Reconciler, is_surrogate
from .sessions import SessionManager
from .store import JsonStore, StoreWriter, folder_subtree
from .work_queue import WorkQueue

log = logging.getLogger(__name__)


class Coordinator:
    def __init__(self, settings, driver, store=None, emit=None):
        """
        `emit` is an async callable receiving every outbound message record
        (responses and completion events for the UI). Defaults to a no-op.
        """
        self.settings = settings
        self.driver = driver
        self.emit = emit or _discard

        self.writer = StoreWriter(store or JsonStore(settings.kb_root))
        self.extractor = ContentExtractor.from_settings(settings)
        self.reconciler = Reconciler.from_settings(self.writer, settings)
        self.correlator = RequestCorrelator(settings.request_timeout)
        self.sessions = SessionManager(driver, settings, self.extractor)
        self.agent = IndexingAgent(self.writer, self.extractor, settings, self.handle)
        self.queue = WorkQueue(self.sessions, self.agent, driver, settings)
        self.archiver = Archiver(driver, self.writer, self.extractor, settings)
        self._tasks = set()

    async def start(self):
        await self.sessions.start()
        await self.queue.start()
        if self.settings.archive_enabled:
            await self.archiver.start()
        log.info("[Core] Ready")

    async def shutdown(self):
        log.info("[Core] Shutting down")
        await self.archiver.stop()
        self.correlator.cancel_all("shutting down")
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.queue.shutdown()
        await self.sessions.close_all()

    # ==========================================================================
    # Routing
    # ==========================================================================

    async def handle(self, message):
        """Routes one inbound message record. Returns the reply, if any."""
        if isinstance(message, LivenessProbe):
            return LivenessAck(message.request_id)

        if isinstance(message, IndexRequest):
            chat_id = self.reconciler.resolve(message.chat_id)
            if is_surrogate(chat_id) and message.title:
                chat_id = await self.reconciler.match_known(chat_id, message.title) or chat_id
            self.queue.enqueue(chat_id, message.title)
            return None

        if isinstance(message, ExtractionComplete):
            self.queue.notify_complete(message.chat_id, message.success)
            await self.emit(message)
            return None

        if isinstance(message, DiscoveryComplete):
            await self.reconciler.migrate(message.surrogate_id, message.real_id, message.title)
            self.queue.rename(message.surrogate_id, message.real_id)
            await self.emit(message)
            return None

        if isinstance(message, ChatSendRequest):
            return await self.send_chat(message)

        if isinstance(message, ChatSendResponse):
            self.correlator.resolve(message.request_id, message)
            return None

        if isinstance(message, CloseChatRequest):
            await self.sessions.close(message.thread_key)
            return None

        log.warning("[Core] No handler for %s", type(message).__name__)
        return None

    # ==========================================================================
    # Folder chat
    # ==========================================================================

    async def send_chat(self, request):
        """Runs one folder-chat exchange through the correlator."""
        try:
            response = await self.correlator.send(request.request_id, request, self._dispatch_chat)
        except RequestTimeout as e:
            response = ChatSendResponse.failure(request.request_id, str(e))
        except ValueError as e:
            response = ChatSendResponse.failure(request.request_id, str(e))
        return response

    async def _dispatch_chat(self, request_id, request):
        session = self.sessions.get(request.thread_key)
        context, persona = request.context, request.workspace_prompt
        if session is None or not session.context_already_sent:
            snapshot = await self.writer.get()
            if context is None:
                context = self._folder_context(snapshot, request.thread_key)
            if persona is None:
                persona = self._workspace_prompt(snapshot, request.thread_key)

        # Fails fast (SessionUnavailable) before the exchange is spawned.
        await self.sessions.acquire(request.thread_key)
        task = asyncio.create_task(self._exchange(request_id, request, context, persona))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _exchange(self, request_id, request, context, persona):
        try:
            result = await self.sessions.exchange(request.thread_key, request.text, context, persona)
        except (SessionUnavailable, ExtractionEmpty, SurfaceError) as e:
            log.warning("[Core] Chat %s failed: %s", request_id, e)
            self.correlator.fail(request_id, str(e))
            return
        except Exception as e:
            log.exception("[Core] Chat %s crashed", request_id)
            self.correlator.fail(request_id, str(e))
            return
        await self.handle(ChatSendResponse(
            request_id=request_id, success=True,
            text=result.text, chat_id=result.real_thread_id,
        ))

    def _folder_context(self, snapshot, folder_id):
        folders = folder_subtree(snapshot, folder_id)
        if not folders:
            return None
        chats = []
        for folder in folders:
            for chat_id in folder.get("chatIds", []):
                chat = snapshot["chats"].get(chat_id)
                if chat is not None:
                    chats.append(chat)
        if not any(chat.get("content") for chat in chats):
            return None
        return build_folder_context(folders[0], chats)

    def _workspace_prompt(self, snapshot, folder_id):
        folder = next((f for f in snapshot["folders"] if f["id"] == folder_id), None)
        if folder is None:
            return None
        workspace = next(
            (w for w in snapshot["workspaces"] if w.get("id") == folder.get("workspaceId")), None
        )
        return (workspace or {}).get("defaultPrompt") or None


async def _discard(_message):
    return None
