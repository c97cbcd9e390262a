from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from pydantic import ValidationError

from sharegate.logging import get_logger
from sharegate.storage.models import ShareableContext

logger = get_logger(__name__)


class TransientTokenService:
    """Issues and verifies the short-lived ``authToken`` handed to HTTP clients.

    Tokens are HS256 JWTs whose ``ctx`` claim embeds the full shareable
    context, so verifying one needs no round trip to the core API. Failures
    are never raised to callers: ``verify`` returns ``None`` and logs why.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "sharegate",
        default_ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be non-empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "TransientTokenService":
        return cls(
            settings.client_auth_secret,
            issuer=settings.token_issuer,
            default_ttl_seconds=settings.transient_token_ttl_seconds,
            **kwargs,
        )

    def generate(self, context: ShareableContext, ttl: Optional[int] = None) -> str:
        now = int(self._clock())
        ttl_seconds = self.default_ttl_seconds if ttl is None else int(ttl)
        payload = {
            "iss": self.issuer,
            "iat": now,
            "exp": now + ttl_seconds,
            "ctx": context.model_dump(mode="json"),
        }
        return self._encode_jwt(payload)

    def verify(self, token: Optional[str]) -> Optional[ShareableContext]:
        if not token or not isinstance(token, str):
            self._reject("empty")
            return None
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        try:
            return ShareableContext.model_validate(payload.get("ctx"))
        except ValidationError:
            self._reject("invalid_context")
            return None

    def _reject(self, reason: str) -> None:
        logger.warning("transient_token_rejected", reason=reason)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        # Encoded segments are base64url; anything else cannot have been issued here
        if not token.isascii():
            self._reject("malformed")
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            self._reject("malformed")
            return None

        # Only HS256 is accepted; "none" and asymmetric algs are refused outright
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self._reject("header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self._reject("invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            self._reject("bad_signature")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            self._reject("payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            self._reject("payload_decode_failed")
            return None
        if payload.get("iss") != self.issuer:
            self._reject("wrong_issuer")
            return None
        exp = payload.get("exp")
        if exp is None:
            self._reject("missing_exp")
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            self._reject("missing_exp")
            return None
        if exp_ts <= self._clock():
            self._reject("expired")
            return None
        return payload
