import json
from typing import Any, Dict, Optional

from .protocol import HANDSHAKE_EVENT, Frame, event_name


def encode_frame(event: Any, payload: Any = None) -> bytes:
    """
    Serialize one event to newline-terminated JSON bytes.
    """
    obj = {"event": event_name(event), "payload": payload}
    return (json.dumps(obj) + "\n").encode("utf-8")


def encode_handshake(headers: Dict[str, str]) -> bytes:
    obj = {"event": HANDSHAKE_EVENT, "headers": dict(headers)}
    return (json.dumps(obj) + "\n").encode("utf-8")


def decode_frame(line: bytes | str) -> Frame:
    """
    Parse one JSON line from the server into a Frame.
    line should NOT contain the trailing newline.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    obj = json.loads(line)
    if not isinstance(obj, dict):
        raise ValueError("frame must be a JSON object")
    event: Optional[str] = obj.get("event")
    if not isinstance(event, str) or not event:
        raise ValueError("frame is missing an event name")
    return Frame(event=event, payload=obj.get("payload"))
