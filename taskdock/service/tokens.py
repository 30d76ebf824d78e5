from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
import uuid
from typing import Any, Optional

from taskdock.config import Settings
from taskdock.logging import get_logger
from taskdock.service.errors import TokenExpired, TokenInvalid

logger = get_logger(__name__)


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens.

    The signing secret, issuer, audience and lifetime are passed in at
    construction; nothing here reads process-wide configuration.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
        )

    def _now(self) -> float:
        return time.time()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_access_token(self, user_id: str) -> str:
        now = int(self._now())
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> dict[str, Any]:
        """Return the verified payload or raise TokenInvalid / TokenExpired."""

        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed access token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("malformed access token") from None
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalid("access token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed access token") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed access token")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise TokenInvalid("access token issuer or audience mismatch")
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise TokenInvalid("not an access token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("access token has no usable expiry") from None
        if exp_ts <= self._now():
            raise TokenExpired()
        return payload

    def verify_access_token(self, token: Optional[str]) -> str:
        """Return the subject (user id) of a valid, unexpired access token."""

        if not token:
            raise TokenInvalid("malformed access token")
        return str(self.decode(token)["sub"])

    def issue_refresh_token(self) -> str:
        # 64 random bytes, hex encoded
        return secrets.token_hex(64)


__all__ = ["TokenIssuer"]
