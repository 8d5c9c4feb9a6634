from __future__ import annotations


class ChatblastError(Exception):
    pass


class ValidationError(ChatblastError):
    """Некорректный запрос на создание/операцию: ничего не записано в БД."""


class NotFoundError(ChatblastError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ChannelUnavailableError(ChatblastError):
    """Сессия устройства отсутствует или отключена."""

    def __init__(self, device_id: str, reason: str | None = None) -> None:
        msg = f"Channel unavailable for device {device_id}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.device_id = device_id


class ItemDispatchError(ChatblastError):
    """Ошибка по одному получателю: пишется в job_item, цикл продолжается."""


class PayloadError(ItemDispatchError):
    pass
