"""
Reminder Handler
Handles the inline buttons on dose reminders: taken, snooze, skip and next-dose view
"""

import html
import logging
from datetime import datetime
from typing import List, Optional
import pytz
from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import ContextTypes, CallbackQueryHandler, CommandHandler

from config import config
from scheduler import DoseActionEvent, DoseActionType, DoseScheduler
from service import MedicationReminderService
from utils.keyboards import get_next_dose_keyboard, get_reminder_keyboard, parse_dose_callback

logger = logging.getLogger(__name__)


class ReminderHandler:
    """Handler for all reminder-related operations"""

    def __init__(self, dose_scheduler: Optional[DoseScheduler] = None):
        self.dose_scheduler = dose_scheduler

    def attach(self, dose_scheduler: DoseScheduler):
        self.dose_scheduler = dose_scheduler

    def get_handlers(self) -> List:
        """Get all reminder-related handlers"""
        return [
            CallbackQueryHandler(self.handle_dose_action, pattern="^dose_(taken|snooze|skip|view)_"),
            CommandHandler("today", self.show_today),
            CommandHandler("takeall", self.mark_all_taken),
        ]

    async def _resolve_user(self, telegram_id: int):
        return await self.dose_scheduler.store.get_user_by_telegram_id(telegram_id)

    async def handle_dose_action(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Turn a reminder button press into a dose action"""
        query = update.callback_query
        try:
            await query.answer()

            action, medication_id, scheduled_ts = parse_dose_callback(query.data)
            user = await self._resolve_user(query.from_user.id)
            medication = await self.dose_scheduler.store.get_medication_by_id(medication_id)

            if not medication or not user:
                await query.edit_message_text(f"{config.EMOJIS['error']} {config.ERROR_MESSAGES['medication_not_found']}")
                return

            # Verify user owns this medication
            if medication.user_id != user.id:
                await query.edit_message_text(f"{config.EMOJIS['error']} {config.ERROR_MESSAGES['unauthorized']}")
                return

            scheduled_time = datetime.fromtimestamp(scheduled_ts, tz=pytz.utc) if scheduled_ts is not None else None
            event = DoseActionEvent(
                type=DoseActionType(action), user_id=user.id, medication_id=medication_id, scheduled_time=scheduled_time
            )
            ok, message = await self.dose_scheduler.submit_action(event)

            icon = config.EMOJIS["success"] if ok else config.EMOJIS["warning"]
            if not ok and action == "snooze":
                # A refused snooze still leaves taken/skip open
                keyboard = get_reminder_keyboard(medication_id, scheduled_ts)
            elif ok and action in ("taken", "skip"):
                keyboard = get_next_dose_keyboard(medication_id)
            else:
                keyboard = None
            await query.edit_message_text(
                f"{icon} <b>{html.escape(medication.name)}</b>\n{html.escape(message)}",
                parse_mode=ParseMode.HTML,
                reply_markup=keyboard,
            )

            logger.info(f"User {user.id} pressed {action} for medication {medication_id}: {ok}")

        except Exception as e:
            logger.error(f"Error handling dose action: {e}")
            await query.edit_message_text(f"{config.EMOJIS['error']} {config.ERROR_MESSAGES['general']}")

    async def show_today(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Today's dose counts, plus doses still waiting for an answer and the ones missed"""
        try:
            user = await self._resolve_user(update.effective_user.id)
            if not user:
                await update.message.reply_text(f"{config.EMOJIS['error']} {config.ERROR_MESSAGES['unauthorized']}")
                return

            service = MedicationReminderService(user.id, self.dose_scheduler)
            status = await service.get_todays_status()
            message = (
                f"{config.EMOJIS['report']} <b>Today</b>\n\n"
                f"{config.EMOJIS['success']} Taken: {status['completed']}/{status['total']}\n"
                f"{config.EMOJIS['warning']} Missed: {status['missed']}\n"
                f"{config.EMOJIS['skip']} Skipped: {status['skipped']}\n"
                f"{config.EMOJIS['clock']} Pending: {status['pending']}"
            )

            overdue = await service.get_overdue_doses()
            if overdue:
                message += "\n\n<b>Waiting for you</b>\n"
                message += "\n".join(
                    f"{html.escape(d['medication_name'])} at {d['reminder_time']} ({d['overdue_minutes']}m ago)"
                    for d in overdue
                )
                message += "\n/takeall to mark them taken"

            missed = await service.get_todays_missed()
            if missed:
                message += "\n\n<b>Missed</b>\n"
                message += "\n".join(f"{html.escape(d['medication_name'])} at {d['reminder_time']}" for d in missed)

            await update.message.reply_text(message, parse_mode=ParseMode.HTML)

        except Exception as e:
            logger.error(f"Error showing today's status: {e}")
            await update.message.reply_text(f"{config.EMOJIS['error']} {config.ERROR_MESSAGES['general']}")

    async def mark_all_taken(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Confirm every pending dose of today"""
        try:
            user = await self._resolve_user(update.effective_user.id)
            if not user:
                await update.message.reply_text(f"{config.EMOJIS['error']} {config.ERROR_MESSAGES['unauthorized']}")
                return

            ok, message = await MedicationReminderService(user.id, self.dose_scheduler).mark_all_taken()
            icon = config.EMOJIS["success"] if ok else config.EMOJIS["info"]
            await update.message.reply_text(f"{icon} {message}")

        except Exception as e:
            logger.error(f"Error marking all doses taken: {e}")
            await update.message.reply_text(f"{config.EMOJIS['error']} {config.ERROR_MESSAGES['general']}")


# Global instance
reminder_handler = ReminderHandler()
