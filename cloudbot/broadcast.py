"""Fan a single admin message out to every deliverable account.

Recipients are read page by page (keyset on `_id`) so the full set is
never held in memory. Each recipient gets exactly one delivery attempt,
classified as sent, blocked or failed; a blocked recipient is flagged in
storage and left out of later broadcasts.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Optional

from telethon import errors

SENT = "sent"
FAILED = "failed"
BLOCKED = "blocked"

# Recipient blocked the bot or the account no longer exists
UNREACHABLE_ERRORS = (
    errors.ForbiddenError,
    errors.UserIsBlockedError,
    errors.InputUserDeactivatedError,
)


@dataclass(slots=True)
class BroadcastJob:
    message: str
    cursor: Any = None
    sent: int = 0
    failed: int = 0
    blocked: int = 0
    pages: int = 0
    cancelled: bool = False
    started: bool = False
    finished: bool = False
    interrupted: bool = False

    @property
    def total(self) -> int:
        return self.sent + self.failed + self.blocked


def format_progress(job: BroadcastJob) -> str:
    return f"📤 Sending… ✅ {job.sent} | ❌ {job.failed} | 🚫 {job.blocked}"


def format_summary(job: BroadcastJob) -> str:
    title = "⚠️ Broadcast Interrupted" if job.interrupted else "📢 Broadcast Complete"
    text = (
        f"<b>{title}</b>\n\n"
        f"✅ Sent: <code>{job.sent}</code>\n"
        f"❌ Failed: <code>{job.failed}</code>\n"
        f"🚫 Blocked: <code>{job.blocked}</code>"
    )
    if job.interrupted:
        text += "\n\nCould not load the next page of recipients."
    return text


class BroadcastDispatcher:
    def __init__(self, storage, client, page_size=100, delay=0.05, progress_every=5,
                 fetch_retries=2, retry_backoff=1.0):
        self.storage = storage
        self.client = client
        self.page_size = page_size
        self.delay = delay
        self.progress_every = progress_every
        self.fetch_retries = fetch_retries
        self.retry_backoff = retry_backoff

    def create_job(self, message: str) -> BroadcastJob:
        return BroadcastJob(message=message)

    def cancel(self, job: BroadcastJob) -> bool:
        """Only a job that has not started yet can be cancelled"""
        if job.started:
            return False
        job.cancelled = True
        return True

    async def deliver(self, user_id: int, message: str) -> str:
        try:
            await self.client.send_message(user_id, message, parse_mode="html")
            return SENT
        except UNREACHABLE_ERRORS:
            try:
                await self.storage.mark_blocked(user_id)
            except Exception as e:
                logging.warning(f"⚠️ Could not flag {user_id} as blocked: {e}")
            return BLOCKED
        except errors.FloodWaitError as e:
            logging.warning(f"⏳ Flood wait {e.seconds}s while sending to {user_id}")
            await asyncio.sleep(e.seconds)
            return FAILED
        except Exception as e:
            logging.debug(f"Broadcast delivery to {user_id} failed: {e}")
            return FAILED

    async def _fetch_page(self, job: BroadcastJob) -> Optional[list]:
        for attempt in range(self.fetch_retries + 1):
            try:
                return await self.storage.recipients_page(job.cursor, self.page_size)
            except Exception as e:
                logging.warning(f"⚠️ Broadcast page fetch failed (attempt {attempt + 1}): {e}")
                if attempt < self.fetch_retries:
                    await asyncio.sleep(self.retry_backoff * (attempt + 1))
        return None

    async def _report(self, on_progress, job: BroadcastJob):
        try:
            result = on_progress(job)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logging.debug(f"Broadcast progress callback failed: {e}")

    async def run(self, job: BroadcastJob, on_progress=None) -> BroadcastJob:
        if job.cancelled:
            logging.info("📭 Broadcast cancelled before start")
            return job
        if job.started:
            raise RuntimeError("Broadcast job already started")
        job.started = True

        while True:
            page = await self._fetch_page(job)
            if page is None:
                job.interrupted = True
                logging.error(f"❌ Broadcast stopped after {job.pages} pages: recipients unavailable")
                break
            if not page:
                break

            job.pages += 1
            for doc in page:
                outcome = await self.deliver(doc["user_id"], job.message)
                if outcome == SENT:
                    job.sent += 1
                elif outcome == BLOCKED:
                    job.blocked += 1
                else:
                    job.failed += 1
                job.cursor = doc["_id"]
                await asyncio.sleep(self.delay)

            if on_progress and job.pages % self.progress_every == 0:
                await self._report(on_progress, job)

            if len(page) < self.page_size:
                break

        job.finished = True
        logging.info(
            f"📢 Broadcast finished: sent={job.sent} failed={job.failed} "
            f"blocked={job.blocked} pages={job.pages}"
        )
        return job
