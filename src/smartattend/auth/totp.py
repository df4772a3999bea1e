"""
TOTP (RFC 6238) primitives
==========================
HMAC-SHA1, 30-second step, 6 digits: the parameters every standard
authenticator app uses.
"""

import base64
import binascii
import hashlib
import hmac
import re
import secrets
import struct
import time
from typing import Optional
from urllib.parse import quote, urlencode

TIME_STEP = 30
DIGITS = 6
CODE_PATTERN = re.compile(r"[0-9]{6}")
SECRET_BYTES = 20
BASE64_PREFIX = "base64:"


def generate_secret() -> str:
    """Random 160-bit shared secret, base32 encoded without padding."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def decode_secret(secret: str) -> bytes:
    """
    Decode a shared secret to raw key bytes.

    Base32 is tried first (case-insensitive, padding optional, spaces ignored);
    anything that is not valid base32 is read as base64. Some base64 text is
    also valid base32 (e.g. "AAAAAAAAAAAAAAAAAAAA") and would decode to a
    different key, so imported base64 secrets are stored with a "base64:"
    prefix, which skips the base32 attempt.
    """
    if secret.startswith(BASE64_PREFIX):
        encoded = secret[len(BASE64_PREFIX):].strip()
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("TOTP secret is not valid base64") from e

    cleaned = secret.replace(" ", "").strip()
    try:
        padded = cleaned.upper() + "=" * (-len(cleaned) % 8)
        return base64.b32decode(padded)
    except (binascii.Error, ValueError):
        pass
    try:
        return base64.b64decode(cleaned + "=" * (-len(cleaned) % 4), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("TOTP secret is neither base32 nor base64") from e


def time_counter(at: Optional[float] = None) -> int:
    """Number of whole time steps since the Unix epoch."""
    if at is None:
        at = time.time()
    return int(at // TIME_STEP)


def hotp(key: bytes, counter: int) -> str:
    """HOTP value (RFC 4226) for a raw key and counter."""
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(binary % 10 ** DIGITS).zfill(DIGITS)


def generate_totp(secret: str, at: Optional[float] = None) -> str:
    """TOTP for the time step containing `at` (default: now)."""
    return hotp(decode_secret(secret), time_counter(at))


def verify_totp(secret: str, code: str, at: Optional[float] = None, window: int = 1) -> bool:
    """
    Check a code against the current step and `window` steps either side.

    Every candidate is compared so the running time does not depend on
    which step matched.
    """
    if not isinstance(code, str) or not CODE_PATTERN.fullmatch(code):
        return False
    try:
        key = decode_secret(secret)
    except ValueError:
        return False

    counter = time_counter(at)
    matched = False
    for step in range(-window, window + 1):
        if hmac.compare_digest(hotp(key, counter + step), code):
            matched = True
    return matched


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    """otpauth:// URI understood by authenticator apps (and QR generators)."""
    label = quote(f"{issuer}:{account}", safe=":@")
    query = urlencode({"secret": secret, "issuer": issuer})
    return f"otpauth://totp/{label}?{query}"
