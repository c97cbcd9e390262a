"""Tests for transient authToken issuance and verification."""

from __future__ import annotations

import base64
import json

import pytest

from sharegate.service.tokens import TransientTokenService
from sharegate.storage.models import ShareableContext


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestRoundTrip:
    def test_verify_returns_equal_context(self, token_service, shareable_context):
        token = token_service.generate(shareable_context)
        restored = token_service.verify(token)

        assert restored == shareable_context
        assert restored.model_dump() == shareable_context.model_dump()

    def test_extension_fields_and_channels_survive(self, token_service):
        ctx = ShareableContext(
            token="SHARE9",
            type="form",
            id="f-1",
            channels=["webchat", "upload"],
            branding={"color": "#fff"},
        )
        restored = token_service.verify(token_service.generate(ctx))

        assert restored.channels == ["webchat", "upload"]
        assert restored.model_extra == {"branding": {"color": "#fff"}}

    def test_token_has_three_segments(self, token_service, shareable_context):
        assert token_service.generate(shareable_context).count(".") == 2


class TestExpiry:
    def test_token_valid_until_ttl_elapses(self, shareable_context):
        clock = FakeClock()
        service = TransientTokenService("secret", clock=clock)
        token = service.generate(shareable_context, ttl=60)

        clock.now += 59
        assert service.verify(token) == shareable_context

        clock.now += 2
        assert service.verify(token) is None

    def test_default_ttl_is_ten_minutes(self, shareable_context):
        clock = FakeClock()
        service = TransientTokenService("secret", clock=clock)
        token = service.generate(shareable_context)

        clock.now += 599
        assert service.verify(token) is not None
        clock.now += 2
        assert service.verify(token) is None


class TestRejection:
    def test_tampered_signature_rejected(self, token_service, shareable_context):
        token = token_service.generate(shareable_context)
        head, payload, sig = token.split(".")
        forged = f"{head}.{payload}.{sig[:-2]}xx"

        assert token_service.verify(forged) is None

    def test_tampered_payload_rejected(self, token_service, shareable_context):
        token = token_service.generate(shareable_context)
        head, _, sig = token.split(".")
        payload = _segment({"iss": "sharegate-test", "exp": 9_999_999_999, "ctx": {"token": "x", "type": "t", "id": "i"}})

        assert token_service.verify(f"{head}.{payload}.{sig}") is None

    def test_other_secret_rejected(self, token_service, shareable_context):
        other = TransientTokenService("another-secret", issuer="sharegate-test")
        assert other.verify(token_service.generate(shareable_context)) is None

    def test_wrong_issuer_rejected(self, shareable_context):
        issuer_a = TransientTokenService("secret", issuer="a")
        issuer_b = TransientTokenService("secret", issuer="b")

        assert issuer_b.verify(issuer_a.generate(shareable_context)) is None

    def test_none_algorithm_rejected(self, token_service):
        header = _segment({"alg": "none", "typ": "JWT"})
        payload = _segment({"iss": "sharegate-test", "exp": 9_999_999_999, "ctx": {}})

        assert token_service.verify(f"{header}.{payload}.") is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***", "h.p.é", None])
    def test_malformed_tokens_return_none(self, token_service, token):
        assert token_service.verify(token) is None

    def test_non_ascii_signature_rejected(self, token_service, shareable_context):
        header, payload, _ = token_service.generate(shareable_context).split(".")

        assert token_service.verify(f"{header}.{payload}.ééé") is None


    def test_missing_context_fields_rejected(self):
        service = TransientTokenService("secret")
        token = service._encode_jwt({"iss": "sharegate", "exp": 9_999_999_999, "ctx": {"id": "x"}})

        assert service.verify(token) is None

    def test_missing_exp_rejected(self):
        service = TransientTokenService("secret")
        token = service._encode_jwt({"iss": "sharegate", "ctx": {"token": "t", "type": "a", "id": "b"}})

        assert service.verify(token) is None

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            TransientTokenService("")
