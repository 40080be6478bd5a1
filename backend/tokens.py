# tokens.py — Verification token generation
"""
Opaque bearer tokens for public incident verification.

Tokens come straight from the OS CSPRNG via `secrets`; they are never derived
from incident content, organisation identity or version position.
"""
import os
import secrets

from exceptions import TokenGenerationError

MIN_TOKEN_BYTES = 16
TOKEN_BYTES = int(os.getenv("VERIFICATION_TOKEN_BYTES", "32"))
# Upper bound on what the resolver will even look up
MAX_TOKEN_LENGTH = 256

if TOKEN_BYTES < MIN_TOKEN_BYTES:
    raise RuntimeError(
        f"VERIFICATION_TOKEN_BYTES must be at least {MIN_TOKEN_BYTES} (got {TOKEN_BYTES})"
    )


class TokenGenerator:
    """Callable producing URL-safe random tokens of `nbytes` entropy."""

    def __init__(self, nbytes: int = TOKEN_BYTES):
        if nbytes < MIN_TOKEN_BYTES:
            raise ValueError(f"Token entropy must be at least {MIN_TOKEN_BYTES} bytes")
        self.nbytes = nbytes

    def __call__(self) -> str:
        try:
            return secrets.token_urlsafe(self.nbytes)
        except (OSError, NotImplementedError) as e:
            raise TokenGenerationError(
                f"Randomness source unavailable: {e.__class__.__name__}",
                operation="generate_token",
            ) from e


default_generator = TokenGenerator()


def generate_token() -> str:
    return default_generator()
