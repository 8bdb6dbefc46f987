"""
Stability Detector.

Gemini never says "response finished". Completion is inferred from the page
going quiet: every structural mutation restarts a quiet period, and when a
quiet period elapses uninterrupted the content is re-read and validated.

    WATCHING --quiet--> VALIDATING --long enough--> FINALIZED
        ^                   |
        |                   +--too short, extension left--> EXTENDED
        +---- mutation -----+--too short, none left-------> GAVE_UP

Mutations arrive on an asyncio.Queue, so a test can drive the machine with a
synthetic event sequence.
"""

import asyncio
import logging
from enum import Enum

from .errors import StabilityTimeout

log = logging.getLogger(__name__)


class StabilityState(Enum):
    WATCHING = "watching"
    VALIDATING = "validating"
    EXTENDED = "extended"
    FINALIZED = "finalized"
    GAVE_UP = "gave_up"


class StabilityDetector:
    """
    Usage:
        detector = StabilityDetector(monitor.read_content, quiet_period=2.0)
        await monitor.start(detector.notify)
        content = await detector.wait()      # raises StabilityTimeout
    """

    def __init__(self, read_content, quiet_period=2.0, min_length=100, extensions=1, label=""):
        self._read_content = read_content
        self.quiet_period = quiet_period
        self.min_length = min_length
        self.extensions = extensions
        self.label = label

        self._events = asyncio.Queue()
        self.state = StabilityState.WATCHING
        self.mutations = 0
        self.validations = 0
        self.last_content = None

    @classmethod
    def for_indexing(cls, read_content, settings, label=""):
        return cls(
            read_content,
            quiet_period=settings.stability_quiet_period,
            min_length=settings.stability_min_length,
            extensions=settings.stability_extensions,
            label=label,
        )

    @property
    def done(self):
        return self.state in (StabilityState.FINALIZED, StabilityState.GAVE_UP)

    def notify(self, *_):
        """Mutation callback. Safe to call from page bindings; ignored once done."""
        if self.done:
            return
        self.mutations += 1
        self._events.put_nowait("mutation")

    async def wait(self):
        """
        Blocks until the content has settled. Returns the finalized
        ExtractedContent; raises StabilityTimeout (with the last partial
        content) once the extensions are used up on too-short content.
        """
        if self.done:
            raise RuntimeError("detector already finished")

        extensions_left = self.extensions
        while True:
            try:
                await asyncio.wait_for(self._events.get(), timeout=self.quiet_period)
            except asyncio.TimeoutError:
                pass
            else:
                # Page changed: the quiet period starts over.
                self._drain()
                if self.state is StabilityState.EXTENDED:
                    extensions_left = self.extensions
                self.state = StabilityState.WATCHING
                continue

            self.state = StabilityState.VALIDATING
            self.validations += 1
            content = await self._read_content()
            if content is not None:
                self.last_content = content

            if content is not None and len(content.text) >= self.min_length:
                self.state = StabilityState.FINALIZED
                log.info("[Stability] %s settled after %d mutations (%d chars)",
                         self.label, self.mutations, len(content.text))
                return content

            if extensions_left > 0:
                extensions_left -= 1
                self.state = StabilityState.EXTENDED
                log.debug("[Stability] %s quiet but content too short, extending wait", self.label)
                continue

            self.state = StabilityState.GAVE_UP
            log.warning("[Stability] %s gave up waiting for valid content", self.label)
            raise StabilityTimeout(partial=self.last_content)

    def _drain(self):
        while not self._events.empty():
            self._events.get_nowait()
