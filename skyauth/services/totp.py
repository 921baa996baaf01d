"""RFC 6238 time-based one-time passwords and backup codes."""

import base64
import hashlib
import hmac
import secrets
import time
import urllib.parse

TIME_STEP_SECONDS = 30
DIGITS = 6
SECRET_BYTES = 20

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
# No 0/O or 1/I
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_secret(length: int = SECRET_BYTES) -> str:
    """Random secret, base32 encoded without padding."""
    raw = secrets.token_bytes(length)
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def _decode_secret(secret_base32: str) -> bytes:
    padded = secret_base32.strip().replace(" ", "").upper()
    missing_padding = len(padded) % 8
    if missing_padding:
        padded += "=" * (8 - missing_padding)
    return base64.b32decode(padded, casefold=True)


def _hotp(secret: bytes, counter: int) -> str:
    counter_bytes = counter.to_bytes(8, "big")
    digest = hmac.new(secret, counter_bytes, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    truncated = digest[offset : offset + 4]
    code_int = int.from_bytes(truncated, "big") & 0x7FFFFFFF
    code = code_int % (10**DIGITS)
    return f"{code:0{DIGITS}d}"


def time_step(timestamp: float | None = None) -> int:
    """Counter for a unix timestamp (defaults to now)."""
    return int((time.time() if timestamp is None else timestamp) // TIME_STEP_SECONDS)


def generate_code(secret: str, timestamp: float | None = None) -> str:
    """Six-digit code for the step containing ``timestamp``."""
    return _hotp(_decode_secret(secret), time_step(timestamp))


def match_time_step(
    secret: str, code: str, window: int = 1, timestamp: float | None = None
) -> int | None:
    """Return the time step the code belongs to, or None.

    Steps within +/- ``window`` of the current one are accepted. Every
    candidate is compared, so timing does not depend on which step matched.
    """
    code = (code or "").strip().replace(" ", "")
    if len(code) != DIGITS or not code.isdigit():
        return None
    try:
        key = _decode_secret(secret)
    except ValueError:
        return None

    current = time_step(timestamp)
    matched = None
    for offset in range(-window, window + 1):
        counter = current + offset
        if hmac.compare_digest(_hotp(key, counter), code) and matched is None:
            matched = counter
    return matched


def verify_code(secret: str, code: str, window: int = 1, timestamp: float | None = None) -> bool:
    return match_time_step(secret, code, window, timestamp) is not None


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    """Fresh ``XXXX-XXXX`` recovery codes."""
    codes = []
    for _ in range(count):
        raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


def hash_backup_code(code: str, salt: str) -> str:
    """Keyed one-way hash of a normalized backup code (HMAC-SHA256, hex)."""
    normalized = normalize_backup_code(code)
    return hmac.new(salt.encode("utf-8"), normalized.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_backup_code(code: str, hashed_codes: list[str], salt: str) -> int:
    """Index of the stored hash matching ``code``, or -1."""
    candidate = hash_backup_code(code, salt)
    found = -1
    for index, stored in enumerate(hashed_codes):
        if stored and hmac.compare_digest(candidate, stored) and found == -1:
            found = index
    return found


def build_provisioning_uri(secret: str, account_label: str, issuer: str = "Sky Planner") -> str:
    """``otpauth://`` URI for authenticator apps (rendered as a QR code by the UI)."""
    label = f"{urllib.parse.quote(issuer)}:{urllib.parse.quote(account_label)}"
    query = urllib.parse.urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": str(DIGITS),
            "period": str(TIME_STEP_SECONDS),
        },
        quote_via=urllib.parse.quote,
    )
    return f"otpauth://totp/{label}?{query}"
