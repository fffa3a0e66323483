"""Identifier, verification-code and referral-code generation.

Random parts come from ``secrets``. Time parts use base36 epoch ms so
ids sort roughly by creation time, the same shape older clients wrote.
"""

from __future__ import annotations

import secrets
import string

ID_CHARSET = string.digits + string.ascii_lowercase  # base36
REFERRAL_PREFIX = "REF_"

PHONE_CODE_LENGTH = 4
TELEGRAM_CODE_LENGTH = 6


def base36(n: int) -> str:
    """Lower-case base36 rendering of a non-negative integer."""
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(ID_CHARSET[r])
    return "".join(reversed(out))


def random_token(length: int) -> str:
    return "".join(secrets.choice(ID_CHARSET) for _ in range(length))


def new_user_id(now_ms: int) -> str:
    """``usr_<base36 ms>_<9 random>``."""
    return f"usr_{base36(now_ms)}_{random_token(9)}"


def new_request_id(now_ms: int) -> str:
    return f"req_{now_ms}_{random_token(9)}"


def new_chat_id(now_ms: int) -> str:
    return f"chat_{now_ms}_{random_token(9)}"


def new_message_id(now_ms: int, *, global_chat: bool = False) -> str:
    prefix = "global_msg" if global_chat else "msg"
    return f"{prefix}_{now_ms}_{random_token(9)}"


def new_qr_id(now_ms: int) -> str:
    return f"qr_{now_ms}_{random_token(6)}"


def numeric_code(length: int) -> str:
    """Uniformly random decimal code with no leading zero (e.g. 1000-9999)."""
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def generate_referral_code(now_ms: int, user_id: str | None = None) -> str:
    """Referral code for a user, or a free-standing one when no id is given.

    ``REF_<id chars 4-8>_<last 6 of base36 ms><4 random>`` for users,
    ``REF_<base36 ms>_<6 random>`` otherwise; always upper-cased. The
    random part keeps codes minted in the same millisecond apart.
    """
    stamp = base36(now_ms)
    if user_id:
        return f"{REFERRAL_PREFIX}{user_id[4:8]}_{stamp[-6:]}{random_token(4)}".upper()
    return f"{REFERRAL_PREFIX}{stamp}_{random_token(6)}".upper()


def normalize_referral_code(code: str) -> str:
    """Normalize a referral code to uppercase for case-insensitive lookup."""
    return code.strip().upper()


def is_referral_code(code: object) -> bool:
    """Shape check: ``REF_`` prefix and longer than 10 characters."""
    return isinstance(code, str) and code.startswith(REFERRAL_PREFIX) and len(code) > 10


def clean_phone(phone: str | None) -> str:
    """Digits and '+' only."""
    if not phone:
        return ""
    return "".join(c for c in phone if c.isdigit() or c == "+")


def clean_telegram_username(username: str | None) -> str:
    return (username or "").replace("@", "").strip()
