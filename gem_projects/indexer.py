# ==============================================================================
# Indexing Agent
# ==============================================================================
"""
Runs one indexing job on a surface: watch the page until it settles, extract
the conversation, persist it, and report back with ExtractionComplete.
Discovery jobs first find the chat by title on the user's own surface and
report the real id with DiscoveryComplete.
"""
import asyncio
import logging

from .errors import ExtractionEmpty, StabilityTimeout, SurfaceError
from .messages import DiscoveryComplete, ExtractionComplete
from .monitor import ContentMonitor
from .reconcile import titles_match
from .stability import StabilityDetector
from .utils import chat_url, extract_chat_id

log = logging.getLogger(__name__)


class IndexingAgent:
    def __init__(self, writer, extractor, settings, post):
        """`post` is an async callable taking one message record."""
        self.writer = writer
        self.extractor = extractor
        self.settings = settings
        self.post = post

    async def index(self, surface, identifier, title=""):
        """Extract and persist; always ends with an ExtractionComplete."""
        success = False
        try:
            content = await self._settle(surface, identifier)
            if content is None or not content.text.strip():
                raise ExtractionEmpty(f"no conversation text for {identifier}")
            await self.writer.update_chat_content(
                identifier, content, title=title,
                url=chat_url(self.settings.app_url, identifier),
            )
            success = True
        except ExtractionEmpty as e:
            log.warning("[Index] %s", e)
        except SurfaceError as e:
            log.error("[Index] Surface failed while indexing %s: %s", identifier, e)
        await self.post(ExtractionComplete(chat_id=identifier, success=success))
        return success

    async def _settle(self, surface, identifier):
        monitor = ContentMonitor(surface, self.extractor)
        detector = StabilityDetector.for_indexing(monitor.read_content, self.settings, label=identifier)
        await monitor.start(detector.notify)
        try:
            return await detector.wait()
        except StabilityTimeout as e:
            if e.partial is not None and e.partial.text.strip():
                log.warning("[Index] %s never reached full length, saving partial content", identifier)
            return e.partial
        finally:
            await monitor.stop()

    async def discover(self, surface, surrogate, title):
        """
        Navigates the user's surface to the chat titled `title` and indexes
        it under its real id. Posts ExtractionComplete(surrogate, False) when
        the chat cannot be found.
        """
        try:
            real_id = await self._locate(surface, surrogate, title)
        except SurfaceError as e:
            log.error("[Discovery] Surface failed while looking for '%s': %s", title, e)
            real_id = None

        if real_id is None:
            await self.post(ExtractionComplete(chat_id=surrogate, success=False))
            return False

        log.info("[Discovery] '%s' is %s", title, real_id)
        await self.post(DiscoveryComplete(surrogate_id=surrogate, real_id=real_id, title=title))
        return await self.index(surface, real_id, title)

    async def _locate(self, surface, surrogate, title):
        before = extract_chat_id(surface.url)
        if not await surface.navigate_to_chat(surrogate, title, True):
            log.warning("[Discovery] No sidebar entry matches '%s'", title)
            return None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.discovery_timeout
        while True:
            current = extract_chat_id(surface.url)
            if current and current != before:
                return current
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.settings.discovery_poll)

        # Clicking the chat that is already open leaves the URL unchanged, but
        # so does a click that missed. Only accept the open chat by its title.
        if before and await self._shows_title(surface, before, title):
            return before
        log.warning("[Discovery] URL never exposed an id for '%s'", title)
        return None

    async def _shows_title(self, surface, chat_id, title):
        shown = self.extractor.page_title(await surface.html())
        if not shown:
            shown = ((await self.writer.get())["chats"].get(chat_id) or {}).get("title")
        if titles_match(shown, title, self.settings.title_min_prefix, self.settings.title_max_prefix):
            return True
        log.warning("[Discovery] Open chat %s is '%s', not '%s'", chat_id, shown or "?", title)
        return False
