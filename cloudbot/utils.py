"""Small helpers shared by the bot glue and the core services."""

import asyncio
import logging
from datetime import datetime, timezone

DAY_SECONDS = 24 * 60 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Documents written by older deployments may carry naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def escape_html(text) -> str:
    if not text:
        return ""
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def format_file_size(size_bytes) -> str:
    if not size_bytes:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{size:.0f} {units[i]}" if i == 0 else f"{size:.1f} {units[i]}"


def display_name(user: dict) -> str:
    if not user:
        return "Unknown"
    name = " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p)
    if name:
        return name
    if user.get("username"):
        return "@" + user["username"]
    return str(user.get("user_id", "Unknown"))


_background_tasks = set()


def fire_and_forget(coro, label: str = "background task"):
    """Schedule `coro` without awaiting it; failures are logged, never raised"""

    async def _runner():
        try:
            await coro
        except Exception as e:
            logging.warning(f"⚠️ {label} failed: {e}")

    task = asyncio.create_task(_runner())
    # Keep a strong reference until the task finishes
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
