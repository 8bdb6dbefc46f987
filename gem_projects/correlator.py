"""
Request Correlator.

Lets a caller treat an asynchronous, unreliable channel as a request/response
call. Each request is registered before it is dispatched, so a response that
arrives immediately still finds its entry. The first of response, explicit
failure or timeout wins; the entry is removed on that first resolution, which
turns every later attempt into a no-op.
"""
import asyncio
import logging
from dataclasses import dataclass

from .errors import RequestTimeout
from .messages import ChatSendResponse

log = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    request_id: str
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle


class RequestCorrelator:
    def __init__(self, timeout=600.0):
        self.timeout = timeout
        self._pending = {}

    def __contains__(self, request_id):
        return request_id in self._pending

    def __len__(self):
        return len(self._pending)

    async def send(self, request_id, payload, dispatch, timeout=None):
        """
        Registers `request_id`, arms the timeout, then runs
        `dispatch(request_id, payload)` alongside the wait. Returns the
        ChatSendResponse that resolves the request; raises RequestTimeout when
        none arrives in time, even while dispatch is still running. A dispatch
        that raises resolves the request as a failure right away.
        """
        if request_id in self._pending:
            raise ValueError(f"request '{request_id}' already pending")

        loop = asyncio.get_running_loop()
        timeout = self.timeout if timeout is None else timeout
        future = loop.create_future()
        handle = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = PendingRequest(request_id, future, handle)

        dispatching = asyncio.create_task(self._dispatch(request_id, payload, dispatch))
        try:
            return await future
        finally:
            # Resolution wins over an unfinished dispatch.
            if not dispatching.done():
                dispatching.cancel()
            # Requester gave up (cancelled): nobody is left to resolve for.
            self._take(request_id)

    async def _dispatch(self, request_id, payload, dispatch):
        try:
            await dispatch(request_id, payload)
        except Exception as e:
            log.warning("[Correlator] Dispatch of %s failed: %s", request_id, e)
            self.fail(request_id, f"dispatch failed: {e}")

    def resolve(self, request_id, response):
        """Delivers a tagged response. Returns False when nothing was pending."""
        entry = self._take(request_id)
        if entry is None:
            log.debug("[Correlator] Ignoring response for unknown request %s", request_id)
            return False
        if not entry.future.done():
            entry.future.set_result(response)
        return True

    def fail(self, request_id, error):
        """Resolves the request with a failure response."""
        return self.resolve(request_id, ChatSendResponse.failure(request_id, error))

    def cancel_all(self, reason="shutting down"):
        for request_id in list(self._pending):
            self.fail(request_id, reason)

    def _take(self, request_id):
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            entry.timeout_handle.cancel()
        return entry

    def _expire(self, request_id, timeout):
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        log.warning("[Correlator] Request %s timed out after %.0fs", request_id, timeout)
        if not entry.future.done():
            entry.future.set_exception(RequestTimeout(request_id, timeout))
