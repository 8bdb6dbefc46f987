"""
Content Monitor: the consumption side of a surface's DOM mutation stream.

Forwards structural changes to a listener (normally a StabilityDetector) and
reads the current extracted content on demand.
"""
import logging

from .extractor import ExtractedContent, Turn

log = logging.getLogger(__name__)


class ContentMonitor:
    def __init__(self, surface, extractor):
        self.surface = surface
        self.extractor = extractor
        self._listener = None
        self.started = False

    async def start(self, listener):
        """Install the page observer; every change calls `listener()`."""
        self._listener = listener
        await self.surface.observe(self._on_mutation)
        self.started = True
        log.debug("[Monitor] Watching %s", self.surface.surface_id)

    def _on_mutation(self, *_):
        if self._listener is not None:
            self._listener()

    async def read_content(self):
        """Current ExtractedContent of the surface, or None."""
        return self.extractor.extract(await self.surface.html())

    async def stop(self):
        self._listener = None
        if self.started:
            self.started = False
            await self.surface.stop_observing(self._on_mutation)

    async def read_response(self, prompt):
        """
        The model's answer to `prompt` as single-turn content, or None while
        the page is still generating or the answer has not rendered yet.
        """
        if await self.surface.is_generating():
            return None
        answer = self.extractor.last_response(await self.surface.html(), prompt)
        if not answer:
            return None
        return ExtractedContent(text=answer, turn_count=1, turns=[Turn('model', answer)])
