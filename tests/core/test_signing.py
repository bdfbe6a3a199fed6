"""Tests for webhook payload signing (HMAC-SHA256)."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from sitebuilder.core import signing


class TestSign:
    def test_sign_returns_64_char_hex(self) -> None:
        signature = signing.sign(b'{"event":"page.created"}', "secret")
        assert len(signature) == 64
        int(signature, 16)

    def test_matches_stdlib_hmac(self) -> None:
        body = b'{"a":1}'
        expected = hmac.new(b"k", body, hashlib.sha256).hexdigest()
        assert signing.sign(body, "k") == expected

    def test_str_and_bytes_payloads_agree(self) -> None:
        assert signing.sign("héllo", "k") == signing.sign("héllo".encode(), "k")

    def test_signature_header_has_prefix(self) -> None:
        header = signing.signature_header(b"x", "k")
        assert header == "sha256=" + signing.sign(b"x", "k")

    def test_generate_secret_is_random_hex(self) -> None:
        first, second = signing.generate_secret(), signing.generate_secret()
        assert first != second
        assert len(first) == 64
        int(first, 16)


class TestVerify:
    @pytest.mark.parametrize(
        "payload",
        [b"", b"{}", b'{"event":"page.published","payload":{"id":1}}', "ünïcode"],
    )
    def test_round_trip(self, payload: bytes | str) -> None:
        secret = signing.generate_secret()
        assert signing.verify(payload, secret, signing.sign(payload, secret))

    def test_accepts_prefixed_header_value(self) -> None:
        assert signing.verify(b"body", "k", signing.signature_header(b"body", "k"))

    def test_mutated_payload_fails(self) -> None:
        signature = signing.sign(b'{"id":1}', "k")
        assert not signing.verify(b'{"id":2}', "k", signature)

    def test_mutated_secret_fails(self) -> None:
        signature = signing.sign(b"body", "k1")
        assert not signing.verify(b"body", "k2", signature)

    def test_garbage_signature_fails(self) -> None:
        assert not signing.verify(b"body", "k", "sha256=not-hex-at-all")
        assert not signing.verify(b"body", "k", "")
