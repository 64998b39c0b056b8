"""Per-run secret token generation."""

from __future__ import annotations

import secrets

TOKEN_BYTES = 32


class TokenIssuer:
    """Issues the secret clients must present in ``x-auth-token``.

    Tokens come from the OS CSPRNG: 32 bytes (256 bits), hex encoded to a
    fixed 64 characters. They are never persisted or logged.
    """

    def __init__(self, nbytes: int = TOKEN_BYTES) -> None:
        if nbytes < TOKEN_BYTES:
            raise ValueError(f"Token must carry at least {TOKEN_BYTES} bytes of entropy")
        self._nbytes = nbytes

    def issue(self) -> str:
        return secrets.token_hex(self._nbytes)
