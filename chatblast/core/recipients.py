from __future__ import annotations

import re
from typing import Iterable

from chatblast.core.errors import ValidationError
from chatblast.models.job import RECIPIENT_MAX_LEN

_SEPARATORS_RE = re.compile(r"[\s\-().]")


def normalize_recipient(raw: object) -> str:
    """
    "+7 (900) 123-45-67" -> "79001234567".
    Адреса с "@" (группы/JID) не трогаем, только trim.
    """
    if raw is None:
        raise ValidationError("recipient is empty")
    value = str(raw).strip()
    if "@" not in value:
        value = _SEPARATORS_RE.sub("", value)
        if value.startswith("+"):
            value = value[1:]
    if not value:
        raise ValidationError(f"recipient is empty: {raw!r}")
    if len(value) > RECIPIENT_MAX_LEN:
        raise ValidationError(f"recipient is longer than {RECIPIENT_MAX_LEN} characters: {value[:20]}...")
    return value


def normalize_recipients(raw: Iterable[object]) -> list[str]:
    """Нормализация + дедуп с сохранением порядка (первое вхождение)."""
    out: list[str] = []
    seen: set[str] = set()
    for r in raw:
        norm = normalize_recipient(r)
        if norm in seen:
            continue
        seen.add(norm)
        out.append(norm)
    return out
