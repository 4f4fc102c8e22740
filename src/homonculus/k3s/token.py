"""Cluster join tokens."""

import base64
import secrets

TOKEN_BYTES = 32


def generate_token() -> str:
    """Random 256-bit token, URL-safe base64 without padding."""
    raw = secrets.token_bytes(TOKEN_BYTES)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
