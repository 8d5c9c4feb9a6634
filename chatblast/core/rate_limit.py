from __future__ import annotations

from typing import Any

# Нижняя граница паузы между сообщениями. Не настраивается: ниже неё канал
# быстро ловит антиспам-ограничения.
MIN_SEND_DELAY_SEC = 2.0


def effective_delay(data: dict[str, Any] | None, *, default: float, maximum: float | None = None) -> float:
    """Пауза перед отправкой: override из job.data > default, затем clamp в [MIN_SEND_DELAY_SEC, maximum]."""
    delay = default
    override = (data or {}).get("delay")
    if override is not None and not isinstance(override, bool):
        try:
            delay = float(override)
        except (TypeError, ValueError):
            delay = default

    if maximum is not None and delay > maximum:
        delay = maximum
    return max(MIN_SEND_DELAY_SEC, float(delay))
