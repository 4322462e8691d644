"""Messages exchanged between the fetch pool and its worker units.

Everything crossing the boundary is JSON text so a worker never shares
objects with the scheduler. Binary bodies travel base64-encoded.
"""

from __future__ import annotations

import base64
import json
from dataclasses import asdict, dataclass
from typing import Optional, Union


ACTION_FETCH = "fetch"
ACTION_START = "start"
ACTION_STOP = "stop"

CONTROL_ACTIONS = (ACTION_START, ACTION_STOP)


@dataclass
class FetchRequest:
    url: str


@dataclass
class ControlMessage:
    action: str


@dataclass
class FetchResponse:
    url: str
    status: int
    content_type: str
    body: Union[str, bytes, None]
    final_url: Optional[str] = None
    original_url: Optional[str] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def redirected(self) -> bool:
        return self.original_url is not None


@dataclass
class FetchError:
    url: str
    error: str


Message = Union[FetchRequest, ControlMessage, FetchResponse, FetchError]


def encode_message(message: Message) -> str:
    if isinstance(message, FetchRequest):
        return json.dumps({"action": ACTION_FETCH, "url": message.url})

    if isinstance(message, ControlMessage):
        return json.dumps({"action": message.action})

    if isinstance(message, FetchError):
        return json.dumps({"url": message.url, "error": message.error})

    payload = asdict(message)
    if isinstance(message.body, (bytes, bytearray)):
        payload["body"] = base64.b64encode(message.body).decode("ascii")
        payload["body_encoding"] = "base64"
    return json.dumps(payload)


def decode_message(raw: str) -> Message:
    data = json.loads(raw)

    action = data.get("action")
    if action == ACTION_FETCH:
        return FetchRequest(url=data["url"])
    if action in CONTROL_ACTIONS:
        return ControlMessage(action=action)
    if action is not None:
        raise ValueError(f"Unknown worker action: {action}")

    if "error" in data:
        return FetchError(url=data["url"], error=data["error"])

    body = data.get("body")
    if data.pop("body_encoding", None) == "base64" and body is not None:
        body = base64.b64decode(body)

    return FetchResponse(
        url=data["url"],
        status=data["status"],
        content_type=data["content_type"],
        body=body,
        final_url=data.get("final_url"),
        original_url=data.get("original_url"),
        reason=data.get("reason", ""),
    )
