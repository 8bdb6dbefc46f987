# ==============================================================================
# Work Queue
# ==============================================================================
"""
Serialized indexing jobs. One item is processed at a time; the active item
stays at the head of the queue until it reaches a terminal state:

    a) ExtractionComplete for its identifier
    b) the safety timeout
    c) a setup failure (no session, no visible surface for discovery)

A cool-down always separates consecutive items. Failed items are dropped
after one attempt.
"""
import asyncio
import logging
from collections import Counter, deque
from contextlib import suppress
from dataclasses import dataclass

from .errors import SessionUnavailable
from .reconcile import is_surrogate
from .utils import chat_url

log = logging.getLogger(__name__)


@dataclass
class QueueItem:
    identifier: str
    display_title: str = ""
    needs_discovery: bool = False


def index_key(identifier):
    """Session key of a direct indexing job."""
    return f"index:{identifier}"


class WorkQueue:
    def __init__(self, sessions, agent, driver, settings):
        self.sessions = sessions
        self.agent = agent
        self.driver = driver
        self.settings = settings

        self._items = deque()
        self._active = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._done = None
        self._outcome = None
        self._worker = None
        self._stats = Counter()

    # --- introspection -------------------------------------------------------

    @property
    def pending(self):
        return [item.identifier for item in self._items]

    @property
    def current(self):
        return self._items[0] if self._active and self._items else None

    @property
    def is_idle(self):
        return not self._items and not self._active

    def stats(self):
        return {key: self._stats[key] for key in ("processed", "timed_out", "failed", "skipped")}

    async def wait_idle(self, timeout=None):
        await asyncio.wait_for(self._idle.wait(), timeout)

    # --- producer side ---------------------------------------------------------

    def enqueue(self, identifier, title=""):
        """Returns False when the identifier is already queued or in flight."""
        if not identifier:
            raise ValueError("identifier required")
        if any(item.identifier == identifier for item in self._items):
            log.debug("[Queue] %s already queued", identifier)
            return False
        self._items.append(QueueItem(identifier, title or "", is_surrogate(identifier)))
        self._idle.clear()
        self._wakeup.set()
        log.info("[Queue] Enqueued %s '%s' (%d pending)", identifier, title, len(self._items))
        return True

    def notify_complete(self, identifier, success=True):
        """Terminal signal from the agent. Ignored unless it names the active item."""
        item = self.current
        if item is None or item.identifier != identifier or self._done is None:
            log.debug("[Queue] Ignoring completion for inactive %s", identifier)
            return False
        if not self._done.is_set():
            self._outcome = "processed" if success else "failed"
            self._done.set()
        return True

    def rename(self, old, new):
        """
        Follows an id migration so the completion for `new` still matches.
        Identifiers stay unique: when `new` was already queued, the later of
        the two entries is dropped and the active head is always kept.
        """
        kept = []
        seen = False
        for item in self._items:
            if item.identifier == old:
                item.identifier = new
                item.needs_discovery = False
                log.debug("[Queue] %s is now %s", old, new)
            if item.identifier == new:
                if seen:
                    log.info("[Queue] Dropping duplicate entry for %s", new)
                    continue
                seen = True
            kept.append(item)
        if len(kept) != len(self._items):
            self._items.clear()
            self._items.extend(kept)

    # --- worker ------------------------------------------------------------------

    async def start(self):
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())

    async def shutdown(self):
        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        self._items.clear()
        self._active = False
        self._idle.set()

    async def _run(self):
        while True:
            if not self._items:
                self._active = False
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            item = self._items[0]
            self._active = True
            try:
                outcome = await self._process(item)
            except Exception:
                log.exception("[Queue] Unexpected error processing %s", item.identifier)
                outcome = "failed"
            self._stats[outcome] += 1
            log.info("[Queue] %s -> %s", item.identifier, outcome)

            self._items.popleft()
            self._active = False
            await asyncio.sleep(self.settings.queue_cooldown)

    async def _process(self, item):
        self._done = asyncio.Event()
        self._outcome = None
        session_key = None

        if item.needs_discovery:
            surface = await self.driver.find_app_surface()
            if surface is None:
                log.warning("[Queue] No open Gemini tab to discover '%s', skipping", item.display_title)
                return "skipped"
            job = self.agent.discover(surface, item.identifier, item.display_title)
        else:
            session_key = index_key(item.identifier)
            url = chat_url(self.settings.app_url, item.identifier, indexing=True)
            try:
                session = await self.sessions.acquire(session_key, url)
            except SessionUnavailable as e:
                log.error("[Queue] %s", e)
                return "failed"
            job = self.agent.index(session.surface, item.identifier, item.display_title)

        task = asyncio.create_task(job)
        task.add_done_callback(self._on_job_done)
        try:
            await asyncio.wait_for(self._done.wait(), self.settings.queue_safety_timeout)
            return self._outcome
        except asyncio.TimeoutError:
            log.warning("[Queue] %s hit the %.0fs safety timeout", item.identifier,
                        self.settings.queue_safety_timeout)
            return "timed_out"
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
            self._done = None
            if session_key is not None:
                await self.sessions.close(session_key)

    def _on_job_done(self, task):
        if task.cancelled() or task.exception() is None:
            return
        log.error("[Queue] Job crashed: %s", task.exception())
        if self._done is not None and not self._done.is_set():
            self._outcome = "failed"
            self._done.set()
