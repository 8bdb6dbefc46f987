# ==============================================================================
# Native Messaging Transport
# ==============================================================================
"""
Chrome native messaging framing: each message is a 4-byte native-endian
length followed by that many bytes of UTF-8 JSON, on stdin/stdout.
stdout is the channel, so nothing else may print to it.
"""
import asyncio
import json
import logging
import struct
import sys

from .messages import parse_message

log = logging.getLogger(__name__)

HEADER = struct.Struct('=I')


def read_message(stream):
    """Reads one message dict from a binary stream. Returns None on EOF."""
    raw_length = stream.read(HEADER.size)
    if not raw_length:
        return None
    if len(raw_length) < HEADER.size:
        raise EOFError("truncated message header")
    message_length = HEADER.unpack(raw_length)[0]
    payload = stream.read(message_length)
    if len(payload) < message_length:
        raise EOFError("truncated message body")
    return json.loads(payload.decode('utf-8'))


def write_message(stream, message):
    """Writes one message dict to a binary stream."""
    encoded = json.dumps(message, ensure_ascii=False).encode('utf-8')
    stream.write(HEADER.pack(len(encoded)))
    stream.write(encoded)
    stream.flush()


class NativeMessagingChannel:
    """
    Pumps framed messages into a Coordinator. Every inbound message gets its
    own task, so a long folder chat never blocks indexing traffic.
    """

    def __init__(self, reader=None, writer=None, grace=5.0):
        self.reader = reader or sys.stdin.buffer
        self.writer = writer or sys.stdout.buffer
        self.grace = grace
        self._write_lock = asyncio.Lock()
        self._tasks = set()

    async def emit(self, message):
        async with self._write_lock:
            await asyncio.to_thread(write_message, self.writer, message.to_dict())

    async def serve(self, coordinator):
        """Runs until the extension closes the pipe."""
        while True:
            try:
                data = await asyncio.to_thread(read_message, self.reader)
            except EOFError as e:
                log.error("[Channel] Broken input stream: %s", e)
                break
            except ValueError as e:
                log.warning("[Channel] Undecodable message: %s", e)
                continue
            if data is None:
                log.info("[Channel] Input closed")
                break

            try:
                message = parse_message(data)
            except ValueError as e:
                log.warning("[Channel] Dropping malformed message: %s", e)
                continue

            task = asyncio.create_task(self._dispatch(coordinator, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        # Let quick handlers answer, then abandon the rest.
        if self._tasks:
            _, stragglers = await asyncio.wait(set(self._tasks), timeout=self.grace)
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

    async def _dispatch(self, coordinator, message):
        try:
            reply = await coordinator.handle(message)
        except Exception:
            log.exception("[Channel] Handler failed for %s", message.TYPE)
            return
        if reply is not None:
            await self.emit(reply)
