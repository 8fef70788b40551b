"""
Authentication boundary for the realtime hub.

Tokens are ``<payload>.<signature>`` where the payload is base64url JSON
``{"sub": user_id, "iat": issued_at}`` and the signature is HMAC-SHA256 of
the payload under the hub secret. Without a secret the hub runs in open
mode and accepts any handshake that names a user and a session; that mode
is for local development only and is not a security boundary.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from ..config import HubConfig
from ..exceptions import AuthenticationError

logger = logging.getLogger(__name__)

AuthValidator = Callable[[dict[str, Any]], str | None]


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class TokenSigner:
    """Issues and verifies HMAC-signed auth tokens.

    Example:
        >>> signer = TokenSigner("change-me")
        >>> token = signer.issue("admin")
        >>> signer.verify(token)
        'admin'
    """

    def __init__(
        self,
        secret: str,
        max_age: float = 8 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("TokenSigner requires a non-empty secret")
        self._secret = secret.encode()
        self.max_age = max_age
        self._clock = clock

    def issue(self, user_id: str, issued_at: float | None = None) -> str:
        """Create a token for ``user_id``."""
        payload = json.dumps(
            {"sub": user_id, "iat": issued_at if issued_at is not None else self._clock()},
            separators=(",", ":"),
        )
        encoded = _b64encode(payload.encode())
        return f"{encoded}.{self._sign(encoded)}"

    def verify(self, token: str) -> str:
        """Return the user id carried by a valid token.

        Raises:
            AuthenticationError: If the token is malformed, tampered with or expired
        """
        try:
            encoded, signature = token.split(".", 1)
        except (AttributeError, ValueError):
            raise AuthenticationError("malformed token") from None

        if not hmac.compare_digest(self._sign(encoded), signature):
            raise AuthenticationError("bad signature")

        try:
            payload = json.loads(_b64decode(encoded))
            user_id = payload["sub"]
            issued_at = float(payload["iat"])
        except (binascii.Error, ValueError, KeyError, TypeError):
            raise AuthenticationError("malformed token") from None

        if self._clock() - issued_at > self.max_age:
            raise AuthenticationError("token expired", user_id)
        return user_id

    def _sign(self, encoded: str) -> str:
        return hmac.new(self._secret, encoded.encode(), hashlib.sha256).hexdigest()


def check_credentials(config: HubConfig, user_id: str, password: str) -> bool:
    """Password check for the token endpoint.

    Disabled (always False) unless an admin password is configured.
    """
    if not config.admin_password:
        return False
    return user_id in config.admin_users and hmac.compare_digest(
        password.encode(), config.admin_password.encode()
    )


def build_auth_validator(config: HubConfig) -> AuthValidator:
    """Create the handshake validator for ``config``.

    The validator receives the ``data`` of an ``auth`` envelope and returns
    the authenticated user id, or None when the handshake is rejected.
    """
    signer = TokenSigner(config.auth_secret, config.token_max_age) if config.auth_secret else None

    def validate(data: dict[str, Any]) -> str | None:
        user_id = data.get("userId")
        if signer is None:
            # Open mode
            if user_id and data.get("sessionId"):
                return str(user_id)
            return None

        token = data.get("token")
        if not isinstance(token, str):
            logger.warning("Auth handshake without token")
            return None
        try:
            token_user = signer.verify(token)
        except AuthenticationError as e:
            logger.warning(f"Auth handshake rejected: {e.reason}")
            return None
        if user_id and user_id != token_user:
            logger.warning(f"Auth handshake user mismatch: {user_id} != {token_user}")
            return None
        return token_user

    return validate
