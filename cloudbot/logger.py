from telethon import TelegramClient
import logging
from datetime import datetime, timezone

# Emoji per audit event type
EVENT_ICONS = {
    "REWARD": "💎",
    "CLAIM": "🎁",
    "BROADCAST": "📢",
    "REFERRAL": "🤝",
    "ADMIN": "👑",
    "SYSTEM": "🔄",
    "ERROR": "❌",
}


class Logger:
    """Audit trail: posts events to the admin log channel and the action_logs collection."""

    def __init__(self, client: TelegramClient, channel_id: int, db=None):
        self.client = client
        self.channel_id = channel_id
        self.db = db

    def format_event(self, event_type: str, user_name: str, user_id: int, details: str = "", extra: str = "") -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        icon = EVENT_ICONS.get(event_type, "📝")

        message = f"**{icon} {event_type}**\n\n"
        if user_id:
            message += f"**User:** [{user_name}](tg://user?id={user_id})\n"
            message += f"**ID:** `{user_id}`\n"
        else:
            message += f"**Source:** {user_name}\n"

        if details:
            message += f"{details}\n"

        message += f"\n**Time:** `{timestamp}`"

        if extra:
            message += f"\n{extra}"
        return message

    async def log(self, event_type: str, user_name: str, user_id: int, details: str = "", extra: str = ""):
        await self._send(self.format_event(event_type, user_name, user_id, details, extra))

        # Log to DB
        if self.db:
            try:
                await self.db.log_action(user_id, f"EVENT: {event_type}", f"{details} | {extra}")
            except Exception as e:
                logging.warning(f"⚠️ Could not store audit event {event_type}: {e}")

    async def _send(self, message: str):
        if not self.channel_id:
            return
        try:
            await self.client.send_message(self.channel_id, message)
        except Exception as e:
            # "Could not find input entity" usually means the channel is not cached yet
            try:
                entity = await self.client.get_entity(self.channel_id)
                await self.client.send_message(entity, message)
            except Exception as e2:
                logging.error(f"Failed to log to channel {self.channel_id}: {e} | Retry error: {e2}")
