# tests/test_tokens.py — Verification token generator tests
import re

import pytest

from exceptions import TokenGenerationError
from tokens import TokenGenerator, generate_token, MIN_TOKEN_BYTES, MAX_TOKEN_LENGTH

URL_SAFE = re.compile(r"^[A-Za-z0-9_-]+$")


class TestTokenGenerator:
    def test_default_token_is_url_safe(self):
        token = generate_token()
        assert URL_SAFE.match(token)
        # 32 bytes of entropy encode to 43 base64url characters
        assert len(token) == 43
        assert len(token) <= MAX_TOKEN_LENGTH

    def test_tokens_are_unique(self):
        tokens = {generate_token() for _ in range(2000)}
        assert len(tokens) == 2000

    def test_custom_entropy(self):
        gen = TokenGenerator(nbytes=MIN_TOKEN_BYTES)
        assert len(gen()) == 22

    def test_rejects_weak_entropy(self):
        with pytest.raises(ValueError):
            TokenGenerator(nbytes=MIN_TOKEN_BYTES - 1)

    def test_randomness_failure_is_reported(self, monkeypatch):
        def broken(nbytes):
            raise OSError("no entropy")

        monkeypatch.setattr("tokens.secrets.token_urlsafe", broken)
        with pytest.raises(TokenGenerationError) as exc_info:
            TokenGenerator()()
        assert exc_info.value.code == "ILG-SYS-001"
        assert exc_info.value.http_status == 500
