"""Password strength validation.

A pure, deterministic function: the same password, options and user context
always give the same verdict. Nothing here is persisted or logged.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Literal

from skyauth.services.errors import PasswordTooWeakError

Strength = Literal["weak", "fair", "good", "strong"]

COMMON_PASSWORDS = frozenset(
    {
        "password", "password1", "password123", "123456", "12345678", "123456789",
        "1234567890", "qwerty", "qwerty123", "abc123", "monkey", "master",
        "dragon", "letmein", "login", "welcome", "admin", "admin123",
        "passw0rd", "p@ssword", "p@ssw0rd", "iloveyou", "princess", "sunshine",
        "football", "baseball", "basketball", "soccer", "hockey", "batman",
        "superman", "trustno1", "shadow", "ashley", "michael", "jennifer",
        "jessica", "charlie", "daniel", "thomas", "jordan", "hunter",
        "buster", "harley", "ranger", "george", "summer",
        "taylor", "robert", "pepper", "killer", "computer", "internet",
        "whatever", "starwars", "pokemon", "cheese", "chocolate", "banana",
        "orange", "cookie", "flower", "guitar", "music", "movie",
        "hello", "secret", "test", "test123", "guest", "user",
        "111111", "000000", "121212", "123123", "654321", "666666",
        "696969", "777777", "888888", "999999", "aaaaaa", "qqqqqq",
        "zzzzzz", "asdfgh", "zxcvbn", "qazwsx", "qwertyuiop", "asdfghjkl",
        "zxcvbnm", "1q2w3e", "1q2w3e4r", "1q2w3e4r5t", "passpass", "pass1234",
    }
)  # fmt: skip

NORWEGIAN_COMMON_PASSWORDS = frozenset(
    {
        "passord", "passord1", "passord123", "hemmelig", "velkommen", "skansen",
        "bergen", "oslo", "norsk", "norge", "viking", "fotball", "haaland",
        "sommerferie", "vinter", "brunost", "kvansen", "fjord",
    }
)  # fmt: skip

KEYBOARD_PATTERNS = (
    "qwerty",
    "asdfgh",
    "zxcvbn",
    "qwertyuiop",
    "asdfghjkl",
    "1234567890",
    "0987654321",
    "qazwsx",
    "wsxedc",
)

_REPEATED_CHARS = re.compile(r"(.)\1{3,}")
_DIGIT_RUN = re.compile(r"\d{4,}")

MIN_EMAIL_PART_LENGTH = 4
MIN_NAME_PART_LENGTH = 3


@dataclass(frozen=True)
class PasswordOptions:
    min_length: int = 10
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_number: bool = True
    require_special: bool = True
    check_common_passwords: bool = True


@dataclass(frozen=True)
class UserContext:
    """Identity details a password must not resemble."""

    email: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class PasswordValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    strength: Strength = "weak"
    score: int = 0


def _has_upper(password: str) -> bool:
    return any("A" <= c <= "Z" for c in password)


def _has_lower(password: str) -> bool:
    return any("a" <= c <= "z" for c in password)


def _has_digit(password: str) -> bool:
    return any("0" <= c <= "9" for c in password)


def _has_special(password: str) -> bool:
    return any(not (c.isascii() and c.isalnum()) for c in password)


def is_common_password(password: str) -> bool:
    lowered = password.lower()
    return lowered in COMMON_PASSWORDS or lowered in NORWEGIAN_COMMON_PASSWORDS


def is_similar_to_user(password: str, context: UserContext | None) -> bool:
    """Substring match either way against the email local part or a name token."""
    if context is None:
        return False
    lowered = password.lower()

    if context.email:
        local_part = context.email.lower().split("@")[0]
        if len(local_part) >= MIN_EMAIL_PART_LENGTH:
            if local_part in lowered or lowered in local_part:
                return True

    if context.name:
        for part in context.name.lower().split():
            if len(part) >= MIN_NAME_PART_LENGTH and (part in lowered or lowered in part):
                return True

    return False


def _has_ascending_digits(password: str, run: int = 4) -> bool:
    for match in _DIGIT_RUN.finditer(password):
        digits = match.group()
        streak = 1
        for prev, cur in zip(digits, digits[1:]):
            streak = streak + 1 if int(cur) == int(prev) + 1 else 1
            if streak >= run:
                return True
    return False


def has_common_patterns(password: str) -> bool:
    """Keyboard walks (either direction), 4+ repeated characters, 4+ ascending digits."""
    lowered = password.lower()
    for pattern in KEYBOARD_PATTERNS:
        if pattern in lowered or pattern[::-1] in lowered:
            return True
    if _REPEATED_CHARS.search(password):
        return True
    return _has_ascending_digits(password)


def calculate_entropy(password: str) -> int:
    """Estimated bits: length * log2(charset size)."""
    charset = 0
    if _has_lower(password):
        charset += 26
    if _has_upper(password):
        charset += 26
    if _has_digit(password):
        charset += 10
    if _has_special(password):
        charset += 32
    if charset == 0:
        return 0
    return math.floor(len(password) * math.log2(charset))


def strength_for_score(score: int) -> Strength:
    if score < 40:
        return "weak"
    if score < 60:
        return "fair"
    if score < 80:
        return "good"
    return "strong"


def validate_password(
    password: str,
    options: PasswordOptions | None = None,
    user_context: UserContext | None = None,
) -> PasswordValidationResult:
    """Score a candidate password and list every rule it breaks."""
    opts = options or PasswordOptions()
    errors: list[str] = []
    score = 0

    if len(password) < opts.min_length:
        errors.append(f"Password must be at least {opts.min_length} characters")
    else:
        score += 20
        if len(password) >= 12:
            score += 10
        if len(password) >= 14:
            score += 10

    checks = (
        (opts.require_uppercase, _has_upper, 10, "Password must contain an uppercase letter"),
        (opts.require_lowercase, _has_lower, 10, "Password must contain a lowercase letter"),
        (opts.require_number, _has_digit, 10, "Password must contain a number"),
        (
            opts.require_special,
            _has_special,
            15,
            "Password must contain a special character (!@#$%^&*...)",
        ),
    )
    for required, present, points, message in checks:
        if present(password):
            score += points
        elif required:
            errors.append(message)

    if opts.check_common_passwords and is_common_password(password):
        errors.append("This password is too common and easy to guess")
        score = max(0, score - 30)

    if is_similar_to_user(password, user_context):
        errors.append("Password must not resemble your email address or name")
        score = max(0, score - 20)

    if has_common_patterns(password):
        errors.append("Password contains common patterns that are easy to guess")
        score = max(0, score - 15)

    entropy = calculate_entropy(password)
    if entropy >= 60:
        score += 15
    elif entropy >= 50:
        score += 10
    elif entropy >= 40:
        score += 5

    score = min(100, max(0, score))
    return PasswordValidationResult(
        valid=not errors,
        errors=errors,
        strength=strength_for_score(score),
        score=score,
    )


def assert_valid_password(
    password: str,
    options: PasswordOptions | None = None,
    user_context: UserContext | None = None,
) -> PasswordValidationResult:
    """Validate and raise PasswordTooWeakError carrying every reason."""
    result = validate_password(password, options, user_context)
    if not result.valid:
        raise PasswordTooWeakError(result.errors)
    return result
