"""
Proxy authentication (HTTP Basic).
"""

import base64
import binascii
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

CHALLENGE = 'Basic realm="Proxy"'

# Checked in this order; the first one present wins.
AUTH_HEADERS = (b"proxy-authorization", b"authorization")


@dataclass(frozen=True)
class Credentials:
    username: str = ""
    password: str = ""

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password=<hidden>)"


NO_CREDENTIALS = Credentials()


def authorize(configured: Credentials, presented: Optional[Credentials]) -> bool:
    """
    Decide whether a request may go through.

    An empty configured username disables authentication. Otherwise both
    username and password must match exactly; `None` (no usable header)
    never does.
    """
    if not configured.username:
        return True
    if presented is None:
        return False
    # Compare both, always, so that timing doesn't tell which one was wrong.
    user_ok = secrets.compare_digest(presented.username.encode("utf-8"), configured.username.encode("utf-8"))
    pass_ok = secrets.compare_digest(presented.password.encode("utf-8"), configured.password.encode("utf-8"))
    return user_ok and pass_ok


def parse_basic_authorization(value: bytes) -> Optional[Credentials]:
    """Parse `Basic <base64(user:pass)>`; None if it isn't exactly that."""
    scheme, _, token = value.strip().partition(b" ")
    if scheme.lower() != b"basic" or not token:
        return None
    try:
        decoded = base64.b64decode(token.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, colon, password = decoded.partition(":")
    if not colon:
        return None
    return Credentials(username, password)


def credentials_from_headers(headers: Iterable[Tuple[bytes, bytes]]) -> Optional[Credentials]:
    """
    Extract Basic credentials from h11-style (lowercase name, value) headers.
    """
    found = {}
    for name, value in headers:
        if name in AUTH_HEADERS and name not in found:
            found[name] = value
    for name in AUTH_HEADERS:
        if name in found:
            return parse_basic_authorization(found[name])
    return None
