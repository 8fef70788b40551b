"""
Message envelopes for the realtime channel.

Every WebSocket frame is a JSON object::

    {"type": "inventory", "data": {...}, "timestamp": "2025-11-03T08:00:00+00:00",
     "sessionId": "...", "userId": "...", "signature": "...", "requestId": "..."}

``type``, ``data`` and ``timestamp`` are required. Signatures are
HMAC-SHA256 over the canonical JSON of ``data``, keyed by the auth token
the session presented in its handshake.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..exceptions import EnvelopeError
from ..models import format_timestamp, parse_timestamp, utc_now

# Client -> server types with hub-side meaning
AUTH = "auth"
PING = "ping"
INVENTORY = "inventory"
PROMO = "promo"
MUTATION_TYPES = frozenset({INVENTORY, PROMO})

# Server -> client only
WELCOME = "welcome"
PONG = "pong"
AUTH_SUCCESS = "auth_success"
AUTH_ERROR = "auth_error"
ACK = "ack"
ERROR = "error"
SERVER_ONLY_TYPES = frozenset({WELCOME, PONG, AUTH_SUCCESS, AUTH_ERROR, ACK, ERROR})


@dataclass
class Envelope:
    """A parsed realtime message."""

    type: str
    data: Any
    timestamp: datetime
    session_id: str | None = None
    user_id: str | None = None
    signature: str | None = None
    request_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(
        cls,
        payload: str | bytes | dict[str, Any],
        now: datetime | None = None,
        max_clock_skew: float | None = None,
    ) -> Envelope:
        """Parse and validate an incoming frame.

        Args:
            payload: Raw frame text or an already decoded object
            now: Reference time for the skew check (defaults to current UTC time)
            max_clock_skew: Maximum accepted distance in seconds between the
                envelope timestamp and ``now``; None disables the check

        Raises:
            EnvelopeError: If the frame is not JSON, lacks a required field,
                carries a non-string signature, or its timestamp is outside
                the accepted window
        """
        if isinstance(payload, bytes | str):
            try:
                decoded = json.loads(payload)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise EnvelopeError(f"not valid JSON ({e})") from e
        else:
            decoded = payload

        if not isinstance(decoded, dict):
            raise EnvelopeError("not a JSON object")

        message_type = decoded.get("type")
        if not isinstance(message_type, str) or not message_type:
            raise EnvelopeError("missing type")
        if decoded.get("data") is None:
            raise EnvelopeError("missing data", message_type)
        if decoded.get("timestamp") in (None, ""):
            raise EnvelopeError("missing timestamp", message_type)

        signature = decoded.get("signature")
        if signature is not None and not isinstance(signature, str):
            raise EnvelopeError("signature must be a string", message_type)

        timestamp = parse_timestamp(decoded["timestamp"])
        if timestamp is None:
            raise EnvelopeError("unparseable timestamp", message_type)

        if max_clock_skew is not None:
            reference = now or utc_now()
            skew = abs((reference - timestamp).total_seconds())
            if skew > max_clock_skew:
                raise EnvelopeError(f"timestamp outside window ({skew:.1f}s skew)", message_type)

        return cls(
            type=message_type,
            data=decoded["data"],
            timestamp=timestamp,
            session_id=decoded.get("sessionId"),
            user_id=decoded.get("userId"),
            signature=signature,
            request_id=decoded.get("requestId"),
            raw=decoded,
        )


def make_message(message_type: str, data: Any, **fields: Any) -> dict[str, Any]:
    """Build an outgoing frame stamped with the current time.

    Extra keyword fields (``requestId``, ``sessionId``...) are included when not None.
    """
    message = {"type": message_type, "data": data, "timestamp": format_timestamp(utc_now())}
    message.update({key: value for key, value in fields.items() if value is not None})
    return message


def canonical_json(data: Any) -> str:
    """Stable JSON text used as signature input."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sign_data(data: Any, key: str) -> str:
    """HMAC-SHA256 signature of ``data`` under ``key``."""
    return hmac.new(key.encode(), canonical_json(data).encode(), hashlib.sha256).hexdigest()


def verify_signature(data: Any, signature: str, key: str) -> bool:
    """Constant-time check of a signature produced by ``sign_data``."""
    if not isinstance(signature, str):
        return False
    return hmac.compare_digest(sign_data(data, key).encode(), signature.encode())
