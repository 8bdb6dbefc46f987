"""
Session Manager: one background surface per logical thread of work.

    CREATING -> LOADING -> READY <-> BUSY -> (IDLE | CLOSED)

A thread key is a folder id for folder chats, or "index:<chat id>" for an
indexing job. A per-key lock keeps at most one live surface per key.
Sessions idle longer than the idle timeout are closed by a periodic sweep.
"""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from enum import Enum

from .errors import ExtractionEmpty, SessionUnavailable, StabilityTimeout, SurfaceError
from .monitor import ContentMonitor
from .prompts import build_context_prompt
from .stability import StabilityDetector
from .utils import extract_chat_id

log = logging.getLogger(__name__)


class SessionState(Enum):
    CREATING = "creating"
    LOADING = "loading"
    READY = "ready"
    BUSY = "busy"
    IDLE = "idle"
    CLOSED = "closed"


LIVE_STATES = (SessionState.READY, SessionState.BUSY, SessionState.IDLE)


@dataclass
class Session:
    thread_key: str
    surrogate_thread_id: str
    surface: object = None
    real_thread_id: str = None
    state: SessionState = SessionState.CREATING
    context_already_sent: bool = False
    last_used_at: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def surface_id(self):
        return self.surface.surface_id if self.surface is not None else None

    @property
    def is_ready(self):
        return self.state in LIVE_STATES

    @property
    def thread_id(self):
        return self.real_thread_id or self.surrogate_thread_id


@dataclass
class ExchangeResult:
    text: str
    real_thread_id: str = None


class SessionManager:
    def __init__(self, driver, settings, extractor=None, clock=time.monotonic):
        self.driver = driver
        self.settings = settings
        self.extractor = extractor
        self._clock = clock
        self._sessions = {}
        self._key_locks = {}
        self._sweeper = None

    def get(self, thread_key):
        return self._sessions.get(thread_key)

    def __contains__(self, thread_key):
        return thread_key in self._sessions

    def __len__(self):
        return len(self._sessions)

    # ==========================================================================
    # Acquire
    # ==========================================================================

    async def acquire(self, thread_key, url=None):
        """
        Returns the live session for `thread_key`, creating one (and its
        surface) when there is none or the old surface is dead.
        Raises SessionUnavailable; the failed record is removed either way.
        """
        async with self._key_lock(thread_key):
            session = self._sessions.get(thread_key)
            if session is not None:
                if await self._is_reusable(session):
                    session.last_used_at = self._clock()
                    return session
                log.info("[Session] Discarding stale session for %s", thread_key)
                await self._discard(session)
            return await self._create(thread_key, url)

    @asynccontextmanager
    async def _key_lock(self, thread_key):
        """Per-key lock, dropped again once no caller holds or waits on it."""
        entry = self._key_locks.get(thread_key)
        if entry is None:
            entry = self._key_locks[thread_key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1] and self._key_locks.get(thread_key) is entry:
                del self._key_locks[thread_key]

    async def _is_reusable(self, session):
        if session.surface is None or session.surface.is_closed():
            return False
        if session.state is SessionState.BUSY:
            # In use; the caller queues on session.lock.
            return True
        if session.state not in (SessionState.READY, SessionState.IDLE):
            return False
        return await session.surface.probe()

    async def _create(self, thread_key, url):
        session = Session(
            thread_key=thread_key,
            surrogate_thread_id=f"thread_{uuid.uuid4().hex[:12]}",
            last_used_at=self._clock(),
        )
        self._sessions[thread_key] = session
        log.info("[Session] Creating surface for %s", thread_key)

        try:
            surface = await self.driver.open(url or self.settings.app_url)
            session.surface = surface
            surface.on_close(lambda: self._on_surface_closed(thread_key, surface))

            session.state = SessionState.LOADING
            await self._wait_loaded(session)
            await self._wait_ready(session)
        except (SurfaceError, asyncio.TimeoutError) as e:
            await self._discard(session)
            raise SessionUnavailable(thread_key, str(e) or type(e).__name__) from e
        except asyncio.CancelledError:
            await asyncio.shield(self._discard(session))
            raise

        session.state = SessionState.READY
        session.real_thread_id = extract_chat_id(surface.url)
        session.last_used_at = self._clock()
        log.info("[Session] %s ready on %s", thread_key, surface.surface_id)
        return session

    async def _wait_loaded(self, session):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.session_load_timeout
        while True:
            if await session.surface.ready_state() == "complete":
                return
            if loop.time() >= deadline:
                raise asyncio.TimeoutError(
                    f"page did not finish loading within {self.settings.session_load_timeout:.0f}s"
                )
            await asyncio.sleep(self.settings.session_load_poll)

    async def _wait_ready(self, session):
        attempts = self.settings.session_probe_attempts
        for attempt in range(1, attempts + 1):
            if await session.surface.probe():
                return
            log.debug("[Session] Probe %d/%d failed for %s", attempt, attempts, session.thread_key)
            await asyncio.sleep(self.settings.session_probe_interval)
        raise SurfaceError(f"liveness probe failed {attempts} times")

    # ==========================================================================
    # Exchange
    # ==========================================================================

    async def exchange(self, thread_key, text, context=None, persona=None):
        """
        One message exchange on the thread's surface. Folder context and the
        workspace persona are only sent with the first exchange of a session.
        """
        session = await self.acquire(thread_key)
        async with session.lock:
            if session.state is SessionState.CLOSED or session.surface.is_closed():
                raise SessionUnavailable(thread_key, "surface closed")
            session.state = SessionState.BUSY
            try:
                seed = not session.context_already_sent
                prompt = build_context_prompt(
                    text,
                    context if seed else None,
                    persona if seed else None,
                )
                answer = await self._run_prompt(session, prompt, text)
                if seed and (context or persona):
                    session.context_already_sent = True

                real_id = extract_chat_id(session.surface.url)
                if real_id and real_id != session.real_thread_id:
                    log.info("[Session] %s discovered thread id %s", thread_key, real_id)
                    session.real_thread_id = real_id
                return ExchangeResult(text=answer, real_thread_id=session.real_thread_id)
            finally:
                session.last_used_at = self._clock()
                if session.state is SessionState.BUSY:
                    session.state = SessionState.IDLE

    async def _run_prompt(self, session, prompt, anchor):
        surface = session.surface
        monitor = ContentMonitor(surface, self.extractor)
        detector = StabilityDetector(
            lambda: monitor.read_response(anchor),
            quiet_period=self.settings.exchange_quiet_period,
            min_length=1,
            extensions=self.settings.exchange_extensions,
            label=session.thread_key,
        )
        await monitor.start(detector.notify)
        try:
            if not await surface.submit_prompt(prompt):
                raise SurfaceError("could not find the prompt editor")
            try:
                content = await detector.wait()
            except StabilityTimeout as e:
                content = e.partial
            if content is None:
                raise ExtractionEmpty("no response captured")
            return content.text
        finally:
            await monitor.stop()

    # ==========================================================================
    # Teardown
    # ==========================================================================

    async def close(self, thread_key):
        async with self._key_lock(thread_key):
            session = self._sessions.get(thread_key)
            if session is None:
                return False
            await self._discard(session)
            log.info("[Session] Closed %s", thread_key)
            return True

    async def close_all(self):
        """Best effort: a surface that refuses to close is leaked, not fatal."""
        await self.stop()
        for session in list(self._sessions.values()):
            try:
                await self._discard(session)
            except Exception as e:
                log.warning("[Session] Failed to close %s: %s", session.thread_key, e)

    async def _discard(self, session):
        if self._sessions.get(session.thread_key) is session:
            del self._sessions[session.thread_key]
        session.state = SessionState.CLOSED
        if session.surface is not None:
            await session.surface.close()

    def _on_surface_closed(self, thread_key, surface):
        session = self._sessions.get(thread_key)
        if session is None or session.surface is not surface:
            return
        log.info("[Session] Surface for %s was closed", thread_key)
        del self._sessions[thread_key]
        session.state = SessionState.CLOSED

    # ==========================================================================
    # Idle sweep
    # ==========================================================================

    async def sweep(self):
        """Closes sessions unused for longer than the idle timeout."""
        now = self._clock()
        stale = [
            s.thread_key for s in self._sessions.values()
            if s.state in (SessionState.READY, SessionState.IDLE)
            and now - s.last_used_at > self.settings.session_idle_timeout
        ]
        closed = 0
        for thread_key in stale:
            if await self.close(thread_key):
                closed += 1
        if closed:
            log.info("[Session] Swept %d idle session(s)", closed)
        return closed

    async def start(self):
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.settings.session_sweep_interval)
            try:
                await self.sweep()
            except Exception:
                log.exception("[Session] Sweep failed")
