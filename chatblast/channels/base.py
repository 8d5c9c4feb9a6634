from __future__ import annotations

from typing import Protocol, runtime_checkable

from chatblast.core.payloads import OutboundPayload


@runtime_checkable
class Channel(Protocol):
    """Внешняя сессия устройства, через которую реально уходят сообщения."""

    async def is_available(self, device_id: str) -> bool:
        ...

    async def send(self, device_id: str, recipient: str, payload: OutboundPayload) -> str:
        """Возвращает id сообщения транспорта; при ошибке: исключение."""
        ...
