"""Share token generation."""
import base64
import secrets

DEFAULT_TOKEN_LENGTH = 16


def generate_share_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    """
    Generate an opaque, URL-safe share token.

    Draws ``length`` random bytes, encodes them as unpadded URL-safe
    base64 and truncates the result to ``length`` characters. The
    generator keeps no state; uniqueness is checked by the caller.

    Args:
        length: Number of random bytes and of output characters

    Returns:
        str: Token made of ``[A-Za-z0-9_-]``
    """
    if length <= 0:
        raise ValueError("Token length must be positive")
    raw = secrets.token_bytes(length)
    encoded = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return encoded[:length]


def token_preview(token: str | None) -> str:
    """First four characters of a token, for logs."""
    if not token:
        return ""
    return f"{token[:4]}..."
