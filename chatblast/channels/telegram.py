from __future__ import annotations

import io
import logging
from typing import Dict

from telethon import TelegramClient
from telethon.errors import FloodWaitError
from telethon.sessions import StringSession

from chatblast.core.errors import ChannelUnavailableError, PayloadError
from chatblast.core.payloads import OutboundPayload

logger = logging.getLogger(__name__)


def to_entity(recipient: str) -> str:
    """Номер без "+" telethon не резолвит как телефон."""
    r = (recipient or "").strip()
    if r.isdigit():
        return f"+{r}"
    return r


class TelegramChannel:
    """
    device_id -> TelegramClient (StringSession).
    Жизненным циклом сессий владеет воркер: connect_device/disconnect_all.
    """

    def __init__(self, *, api_id: int = 0, api_hash: str = "") -> None:
        self.api_id = int(api_id or 0)
        self.api_hash = (api_hash or "").strip()
        self._clients: Dict[str, TelegramClient] = {}

    def register(self, device_id: str, client: TelegramClient) -> None:
        self._clients[device_id] = client

    def unregister(self, device_id: str) -> TelegramClient | None:
        return self._clients.pop(device_id, None)

    @property
    def device_ids(self) -> list[str]:
        return sorted(self._clients)

    async def connect_device(self, device_id: str, session_string: str) -> bool:
        session_string = (session_string or "").strip()
        if not (self.api_id and self.api_hash and session_string):
            logger.warning("[tg:%s] api_id/api_hash/session_string missing, device skipped", device_id)
            return False

        client = TelegramClient(StringSession(session_string), self.api_id, self.api_hash)
        try:
            await client.connect()
            if not await client.is_user_authorized():
                logger.warning("[tg:%s] session is not authorized", device_id)
                await client.disconnect()
                return False
        except (OSError, ConnectionError) as e:
            logger.warning("[tg:%s] connect failed: %s: %s", device_id, e.__class__.__name__, e)
            return False

        self.register(device_id, client)
        logger.info("[tg:%s] connected", device_id)
        return True

    async def disconnect_all(self) -> None:
        for device_id in list(self._clients):
            client = self.unregister(device_id)
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("[tg:%s] disconnect error: %s: %s", device_id, e.__class__.__name__, e)

    async def is_available(self, device_id: str) -> bool:
        client = self._clients.get(device_id)
        return bool(client and client.is_connected())

    async def send(self, device_id: str, recipient: str, payload: OutboundPayload) -> str:
        client = self._clients.get(device_id)
        if client is None:
            raise ChannelUnavailableError(device_id, "session not found")
        if not client.is_connected():
            raise ChannelUnavailableError(device_id, "session disconnected")

        entity = to_entity(recipient)
        try:
            if payload.kind == "text":
                msg = await client.send_message(entity, payload.text)
            elif payload.kind == "media" and payload.media:
                media = payload.media
                if media.content is not None:
                    file = io.BytesIO(media.content)
                    file.name = media.file_name or f"{media.media_type}"
                else:
                    file = media.url
                msg = await client.send_file(
                    entity,
                    file,
                    caption=media.caption,
                    force_document=media.media_type == "document",
                    mime_type=media.mimetype,
                )
            else:
                raise PayloadError(f"unsupported payload kind: {payload.kind!r}")
        except FloodWaitError as e:
            # telegram просит подождать N секунд: job на паузу
            raise ChannelUnavailableError(device_id, f"FLOOD_WAIT:{getattr(e, 'seconds', 0)}") from e
        except ConnectionError as e:
            raise ChannelUnavailableError(device_id, str(e) or e.__class__.__name__) from e

        return str(getattr(msg, "id", "") or "")
