"""
Typed command/event records exchanged with the UI collaborator and the page
collaborators. On the wire each record is a JSON object whose "type" field
uses the extension's original message names.
"""
from dataclasses import dataclass


def _require_str(data, key):
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} required")
    return value.strip()


def _optional_str(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be string or null")
    return value


@dataclass
class IndexRequest:
    TYPE = "CMD_INDEX_CHAT"
    chat_id: str
    title: str = ""

    @classmethod
    def from_dict(cls, data):
        return cls(chat_id=_require_str(data, "chatId"), title=_optional_str(data, "title") or "")

    def to_dict(self):
        return {"type": self.TYPE, "chatId": self.chat_id, "title": self.title}


@dataclass
class ChatSendRequest:
    TYPE = "CMD_FOLDER_CHAT_SEND"
    request_id: str
    thread_key: str
    text: str
    context: str = None
    workspace_prompt: str = None

    @classmethod
    def from_dict(cls, data):
        text = data.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("text required")
        return cls(
            request_id=_require_str(data, "requestId"),
            thread_key=_require_str(data, "folderId"),
            text=text,
            context=_optional_str(data, "context"),
            workspace_prompt=_optional_str(data, "workspacePrompt"),
        )

    def to_dict(self):
        data = {"type": self.TYPE, "requestId": self.request_id, "folderId": self.thread_key, "text": self.text}
        if self.context:
            data["context"] = self.context
        if self.workspace_prompt:
            data["workspacePrompt"] = self.workspace_prompt
        return data


@dataclass
class ChatSendResponse:
    TYPE = "FOLDER_CHAT_RESPONSE"
    request_id: str
    success: bool
    text: str = None
    error: str = None
    chat_id: str = None

    @classmethod
    def failure(cls, request_id, error):
        return cls(request_id=request_id, success=False, error=error)

    @classmethod
    def from_dict(cls, data):
        success = data.get("success")
        if not isinstance(success, bool):
            raise ValueError("success must be boolean")
        return cls(
            request_id=_require_str(data, "requestId"),
            success=success,
            text=_optional_str(data, "text"),
            error=_optional_str(data, "error"),
            chat_id=_optional_str(data, "chatId"),
        )

    def to_dict(self):
        data = {"type": self.TYPE, "requestId": self.request_id, "success": self.success}
        for key, value in (("text", self.text), ("error", self.error), ("chatId", self.chat_id)):
            if value is not None:
                data[key] = value
        return data


@dataclass
class CloseChatRequest:
    TYPE = "CMD_CLOSE_FOLDER_CHAT"
    thread_key: str

    @classmethod
    def from_dict(cls, data):
        return cls(thread_key=_require_str(data, "folderId"))

    def to_dict(self):
        return {"type": self.TYPE, "folderId": self.thread_key}


@dataclass
class ExtractionComplete:
    TYPE = "ARCHIVE_COMPLETE"
    chat_id: str
    success: bool = True

    @classmethod
    def from_dict(cls, data):
        return cls(chat_id=_require_str(data, "chatId"), success=data.get("success", True) is not False)

    def to_dict(self):
        return {"type": self.TYPE, "chatId": self.chat_id, "success": self.success}


@dataclass
class DiscoveryComplete:
    TYPE = "DISCOVERY_COMPLETE"
    surrogate_id: str
    real_id: str
    title: str = ""

    @classmethod
    def from_dict(cls, data):
        return cls(
            surrogate_id=_require_str(data, "surrogateId"),
            real_id=_require_str(data, "realId"),
            title=_optional_str(data, "title") or "",
        )

    def to_dict(self):
        return {"type": self.TYPE, "surrogateId": self.surrogate_id, "realId": self.real_id, "title": self.title}


@dataclass
class LivenessProbe:
    TYPE = "PING"
    request_id: str = None

    @classmethod
    def from_dict(cls, data):
        return cls(request_id=_optional_str(data, "requestId"))

    def to_dict(self):
        return {"type": self.TYPE, "requestId": self.request_id}


@dataclass
class LivenessAck:
    TYPE = "PONG"
    request_id: str = None

    @classmethod
    def from_dict(cls, data):
        return cls(request_id=_optional_str(data, "requestId"))

    def to_dict(self):
        return {"type": self.TYPE, "requestId": self.request_id}


MESSAGE_TYPES = {
    cls.TYPE: cls
    for cls in (
        IndexRequest, ChatSendRequest, ChatSendResponse, CloseChatRequest,
        ExtractionComplete, DiscoveryComplete, LivenessProbe, LivenessAck,
    )
}


def parse_message(data):
    """dict -> message record. Raises ValueError on unknown or malformed input."""
    if not isinstance(data, dict):
        raise ValueError("message must be an object")
    kind = data.get("type")
    cls = MESSAGE_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"unknown message type: {kind!r}")
    return cls.from_dict(data)
