import io
import struct

import pytest

from gem_projects.messages import LivenessAck
from gem_projects.transport import NativeMessagingChannel, read_message, write_message


def frame(payload):
    return struct.pack('=I', len(payload)) + payload


def test_write_then_read_frames():
    stream = io.BytesIO()
    write_message(stream, {"type": "PING", "text": "héllo"})

    raw = stream.getvalue()
    assert struct.unpack('=I', raw[:4])[0] == len(raw) - 4

    stream.seek(0)
    assert read_message(stream) == {"type": "PING", "text": "héllo"}
    assert read_message(stream) is None


def test_truncated_body_raises():
    stream = io.BytesIO(struct.pack('=I', 50) + b'{"type"')
    with pytest.raises(EOFError):
        read_message(stream)


class EchoCoordinator:
    def __init__(self):
        self.handled = []

    async def handle(self, message):
        self.handled.append(message)
        if message.TYPE == "PING":
            return LivenessAck(message.request_id)
        return None


@pytest.mark.asyncio
async def test_channel_answers_ping_and_skips_garbage():
    reader = io.BytesIO(
        frame(b'{"type": "BOGUS"}')
        + frame(b'{"type": "PING", "requestId": "p1"}')
        + frame(b"not json at all")
        + frame(b'{"type": "CMD_INDEX_CHAT", "chatId": "abc"}')
    )
    writer = io.BytesIO()
    coordinator = EchoCoordinator()

    channel = NativeMessagingChannel(reader, writer, grace=1)
    await channel.serve(coordinator)

    assert sorted(m.TYPE for m in coordinator.handled) == ["CMD_INDEX_CHAT", "PING"]
    writer.seek(0)
    assert read_message(writer) == {"type": "PONG", "requestId": "p1"}
    assert read_message(writer) is None


@pytest.mark.asyncio
async def test_emit_writes_framed_message():
    writer = io.BytesIO()
    channel = NativeMessagingChannel(io.BytesIO(), writer)

    await channel.emit(LivenessAck("p1"))

    writer.seek(0)
    assert read_message(writer) == {"type": "PONG", "requestId": "p1"}
