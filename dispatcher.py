"""
Notification dispatchers for dose reminders and missed-dose alerts

TelegramDispatcher sends immediately and relies on the in-process scheduler
for timing. ScheduledTelegramDispatcher additionally registers future
deliveries in a persistent APScheduler job store so they survive restarts.
"""

import html
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from apscheduler.events import EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from config import config
from utils.keyboards import get_reminder_keyboard

logger = logging.getLogger(__name__)

DELIVERY_PREFIX = "delivery_"


@dataclass
class DispatchResult:
    ok: bool
    error: Optional[str] = None
    message_id: Optional[int] = None


def delivery_handle(occurrence_key: str, when: datetime) -> str:
    """Job id of the delivery for an occurrence at ``when``; stable across restarts"""
    return f"{DELIVERY_PREFIX}{occurrence_key}_{int(when.timestamp())}"


def format_notification(title: str, body: str) -> str:
    return f"<b>{html.escape(title)}</b>\n\n{html.escape(body)}"


def _reply_markup(payload: Optional[Dict[str, Any]]):
    if not payload or not payload.get("action_required"):
        return None
    return get_reminder_keyboard(payload["medication_id"], payload.get("scheduled_ts"))


class Dispatcher:
    """Delivers notifications to a user"""

    # True when the dispatcher can hold a delivery until a future instant itself
    native_timers: bool = False

    async def start(self):
        pass

    async def stop(self):
        pass

    async def dispatch(
        self, user_id: int, title: str, body: str, payload: Optional[Dict[str, Any]] = None
    ) -> DispatchResult:
        raise NotImplementedError

    async def schedule_delivery(
        self, user_id: int, title: str, body: str, payload: Dict[str, Any], when: datetime
    ) -> Optional[str]:
        """Register a delivery for ``when``; returns a cancel handle or None if unsupported"""
        return None

    async def cancel_delivery(self, handle: str):
        pass

    async def cancel_deliveries(self, occurrence_key: str) -> int:
        """Cancel every pending delivery registered for an occurrence"""
        return 0

    async def has_delivery(self, occurrence_key: str, when: datetime) -> bool:
        """True if the delivery for ``when`` is pending or already went out"""
        return False


class TelegramDispatcher(Dispatcher):
    """Sends notifications through the Telegram Bot API"""

    def __init__(self, bot: Bot, store=None):
        self.bot = bot
        if store is None:
            from database import get_store

            store = get_store()
        self.store = store

    async def _resolve_chat_id(self, user_id: int) -> Optional[int]:
        user = await self.store.get_user_by_id(user_id)
        if not user or not user.is_active or not user.telegram_id:
            return None
        return user.telegram_id

    async def dispatch(
        self, user_id: int, title: str, body: str, payload: Optional[Dict[str, Any]] = None
    ) -> DispatchResult:
        chat_id = await self._resolve_chat_id(user_id)
        if chat_id is None:
            logger.warning(f"No Telegram chat for user {user_id}, notification '{title}' not sent")
            return DispatchResult(ok=False, error="missing recipient")

        try:
            message = await self.bot.send_message(
                chat_id=chat_id,
                text=format_notification(title, body),
                parse_mode=ParseMode.HTML,
                reply_markup=_reply_markup(payload),
            )
        except TelegramError as e:
            logger.error(f"Failed to send '{title}' to user {user_id}: {e}")
            return DispatchResult(ok=False, error=str(e))

        logger.info(f"Sent '{title}' to user {user_id}")
        return DispatchResult(ok=True, message_id=getattr(message, "message_id", None))


async def deliver_scheduled_message(chat_id: int, text: str, medication_id: int, scheduled_ts: Optional[int]):
    """Job function for persisted deliveries.

    Lives at module level so the job store can reference it by name; the bot
    token is read at run time and never written to the job store.
    """
    try:
        async with Bot(config.BOT_TOKEN) as bot:
            await bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_markup=get_reminder_keyboard(medication_id, scheduled_ts),
            )
        logger.info(f"Delivered scheduled reminder for medication {medication_id} to chat {chat_id}")
    except TelegramError as e:
        logger.error(f"Scheduled reminder for medication {medication_id} failed: {e}")


class ScheduledTelegramDispatcher(TelegramDispatcher):
    """Telegram dispatcher whose future deliveries live in a persistent job store"""

    native_timers = True

    def __init__(self, bot: Bot, store=None, jobstore=None):
        super().__init__(bot, store)
        if jobstore is None:
            from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore

            jobstore = SQLAlchemyJobStore(url=config.NATIVE_JOBSTORE_URL, tablename="scheduled_deliveries")

        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": config.GRACE_PERIOD_MINUTES * 60,
        }
        self.scheduler = AsyncIOScheduler(jobstores={"default": jobstore}, job_defaults=job_defaults, timezone="UTC")
        self.scheduler.add_listener(self._delivery_listener, EVENT_JOB_EXECUTED)

        # Deliveries that ran in this process; the job store forgets them once run
        self._delivered = set()

    async def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduled delivery store started")

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduled delivery store stopped")

    async def schedule_delivery(
        self, user_id: int, title: str, body: str, payload: Dict[str, Any], when: datetime
    ) -> Optional[str]:
        chat_id = await self._resolve_chat_id(user_id)
        if chat_id is None:
            logger.warning(f"No Telegram chat for user {user_id}, delivery not registered")
            return None

        handle = delivery_handle(payload["occurrence_key"], when)
        if self.scheduler.get_job(handle):
            self.scheduler.remove_job(handle)

        self.scheduler.add_job(
            func=deliver_scheduled_message,
            trigger=DateTrigger(run_date=when),
            id=handle,
            args=[chat_id, format_notification(title, body), payload["medication_id"], payload.get("scheduled_ts")],
            name=f"Dose delivery for user {user_id}",
            replace_existing=True,
        )
        logger.debug(f"Registered delivery {handle} at {when.isoformat()}")
        return handle

    async def cancel_delivery(self, handle: str):
        if handle and self.scheduler.get_job(handle):
            self.scheduler.remove_job(handle)
            logger.debug(f"Cancelled delivery {handle}")

    def _delivery_listener(self, event: JobExecutionEvent):
        if event.job_id.startswith(DELIVERY_PREFIX):
            self._delivered.add(event.job_id)

    async def cancel_deliveries(self, occurrence_key: str) -> int:
        prefix = f"{DELIVERY_PREFIX}{occurrence_key}_"
        handles = [job.id for job in self.scheduler.get_jobs() if job.id.startswith(prefix)]
        for handle in handles:
            self.scheduler.remove_job(handle)
        if handles:
            logger.debug(f"Cancelled {len(handles)} deliveries for {occurrence_key}")
        return len(handles)

    async def has_delivery(self, occurrence_key: str, when: datetime) -> bool:
        handle = delivery_handle(occurrence_key, when)
        return handle in self._delivered or self.scheduler.get_job(handle) is not None
