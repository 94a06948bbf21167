from __future__ import annotations

import re
from typing import Optional

E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
_ALLOWED_RE = re.compile(r"^\+?[\d\s().-]+$")


def normalize_phone(raw: Optional[str], default_country_code: str = "1") -> Optional[str]:
    """Return ``raw`` as a strict E.164 number, or ``None`` if it cannot be.

    A bare ten-digit number is assumed to be domestic to
    ``default_country_code``. Letters anywhere in the input reject it.
    """
    if raw is None:
        return None
    text = raw.strip()
    if not text or not _ALLOWED_RE.match(text):
        return None
    digits = re.sub(r"\D", "", text)
    if not text.startswith("+") and len(digits) == 10:
        candidate = f"+{default_country_code}{digits}"
    else:
        candidate = f"+{digits}"
    return candidate if E164_RE.match(candidate) else None


def is_e164(value: str) -> bool:
    return bool(E164_RE.match(value or ""))
