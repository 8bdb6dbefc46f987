# ==============================================================================
# Passive Archiver
# ==============================================================================
"""
Keeps the chat the user is looking at up to date in the store. Every
`archive_interval` seconds the user's own Gemini tab is checked; when it shows
a chat the store already knows, the page is watched until it has been quiet
for `archive_quiet_period` and the extracted conversation is saved.

Nothing is navigated, and chats the user never organized are left alone.
"""
import asyncio
import logging
from contextlib import suppress

from .errors import StabilityTimeout, SurfaceError
from .monitor import ContentMonitor
from .stability import StabilityDetector
from .utils import extract_chat_id

log = logging.getLogger(__name__)


class Archiver:
    def __init__(self, driver, writer, extractor, settings):
        self.driver = driver
        self.writer = writer
        self.extractor = extractor
        self.settings = settings
        self._task = None
        self.archived = 0

    async def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            log.info("[Archive] Watching the open chat every %.0fs", self.settings.archive_interval)

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.settings.archive_interval)
            try:
                await self.archive_once()
            except SurfaceError as e:
                log.warning("[Archive] %s", e)
            except Exception:
                log.exception("[Archive] Loop error")

    async def archive_once(self):
        """One pass. Returns the archived chat id, or None when nothing was saved."""
        surface = await self.driver.find_app_surface()
        if surface is None:
            return None
        chat_id = extract_chat_id(surface.url)
        if not chat_id:
            return None

        chat = (await self.writer.get())["chats"].get(chat_id)
        if chat is None:
            log.debug("[Archive] %s is not in any folder, skipping", chat_id)
            return None

        monitor = ContentMonitor(surface, self.extractor)
        current = await monitor.read_content()
        if current is None or len(current.text) <= self.settings.archive_min_length:
            return None

        content = await self._settle(monitor, chat_id)
        if content is None:
            return None
        if extract_chat_id(surface.url) != chat_id:
            log.debug("[Archive] User left %s before it settled", chat_id)
            return None
        if content.text == chat.get("content"):
            return None

        await self.writer.update_chat_content(chat_id, content)
        self.archived += 1
        log.info("[Archive] Archived %d turns for chat %s", content.turn_count, chat_id)
        return chat_id

    async def _settle(self, monitor, chat_id):
        detector = StabilityDetector(
            monitor.read_content,
            quiet_period=self.settings.archive_quiet_period,
            # strictly longer than archive_min_length
            min_length=self.settings.archive_min_length + 1,
            extensions=0,
            label=f"archive:{chat_id}",
        )
        await monitor.start(detector.notify)
        try:
            return await asyncio.wait_for(detector.wait(), self.settings.archive_max_wait)
        except StabilityTimeout:
            log.debug("[Archive] %s has too little content to archive", chat_id)
            return None
        except asyncio.TimeoutError:
            log.debug("[Archive] %s kept changing for %.0fs", chat_id, self.settings.archive_max_wait)
            return None
        finally:
            await monitor.stop()
