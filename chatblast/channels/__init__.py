from .base import Channel
from .telegram import TelegramChannel
