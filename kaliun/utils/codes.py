"""Human-enterable codes.

Both alphabets leave out characters that are easy to misread on a small
screen or type wrong (0/O, 1/I). The formats are fixed; the values are not.
"""

import secrets

# 32 symbols: A-Z without I and O, digits without 0 and 1
CLAIM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CLAIM_CODE_LENGTH = 6

# Letters only, so a user code can never be mistaken for a claim code
USER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ"
USER_CODE_GROUP = 4


def _draw(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_claim_code() -> str:
    """6 characters, e.g. ``K7M2QX``."""
    return _draw(CLAIM_CODE_ALPHABET, CLAIM_CODE_LENGTH)


def generate_user_code() -> str:
    """Two groups of four letters, e.g. ``WXYZ-ABCD``."""
    return f"{_draw(USER_CODE_ALPHABET, USER_CODE_GROUP)}-{_draw(USER_CODE_ALPHABET, USER_CODE_GROUP)}"


def generate_device_code() -> str:
    """Opaque device code (256 bits), not meant to be typed."""
    return secrets.token_urlsafe(32)


def normalize_claim_code(raw: str) -> str:
    return raw.strip().upper()


def is_claim_code(code: str) -> bool:
    return len(code) == CLAIM_CODE_LENGTH and all(c in CLAIM_CODE_ALPHABET for c in code)


def normalize_user_code(raw: str) -> str:
    """Accept ``wxyz abcd``, ``WXYZABCD`` or ``wxyz-abcd`` and return ``WXYZ-ABCD``."""
    compact = "".join(c for c in raw.upper() if c.isalnum())
    if len(compact) != USER_CODE_GROUP * 2:
        return compact
    return f"{compact[:USER_CODE_GROUP]}-{compact[USER_CODE_GROUP:]}"
