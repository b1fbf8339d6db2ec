"""
Notification tasks carried over the queue.

Wire format is a JSON object:
    {"to": ..., "subject": ..., "body": ..., "type": ..., "meta": {...}}
with "type" and "meta" omitted when empty.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class MalformedTaskError(ValueError):
    """Payload is not a decodable notification task."""
    pass


@dataclass(frozen=True)
class NotificationTask:
    recipient: str
    subject: str
    body: str
    kind: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"to": self.recipient, "subject": self.subject, "body": self.body}
        if self.kind:
            data["type"] = self.kind
        if self.metadata:
            data["meta"] = dict(self.metadata)
        return data

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_json(cls, payload: bytes) -> "NotificationTask":
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise MalformedTaskError(f"bad message json: {e}") from e

        if not isinstance(data, dict):
            raise MalformedTaskError(f"expected a JSON object, got {type(data).__name__}")

        for key in ("to", "subject", "body"):
            if not isinstance(data.get(key), str):
                raise MalformedTaskError(f"missing or non-string field {key!r}")

        kind = data.get("type")
        meta = data.get("meta")
        if kind is not None and not isinstance(kind, str):
            raise MalformedTaskError("field 'type' must be a string")
        if meta is not None and not isinstance(meta, dict):
            raise MalformedTaskError("field 'meta' must be an object")

        return cls(
            recipient=data["to"],
            subject=data["subject"],
            body=data["body"],
            kind=kind or None,
            metadata=meta or {},
        )
