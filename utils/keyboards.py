"""
Inline keyboards attached to dose reminders
"""

from typing import Optional
from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from config import config

# callback_data layout: dose_<action>_<medication_id>_<scheduled unix ts>
CALLBACK_PREFIX = "dose"
DOSE_ACTIONS = ("taken", "snooze", "skip", "view")


def build_dose_callback(action: str, medication_id: int, scheduled_ts: Optional[int] = None) -> str:
    if action not in DOSE_ACTIONS:
        raise ValueError(f"Unknown dose action: {action}")
    data = f"{CALLBACK_PREFIX}_{action}_{medication_id}"
    if scheduled_ts is not None:
        data += f"_{int(scheduled_ts)}"
    return data


def parse_dose_callback(data: str):
    """Return (action, medication_id, scheduled_ts or None); raise ValueError on junk"""
    parts = (data or "").split("_")
    if len(parts) not in (3, 4) or parts[0] != CALLBACK_PREFIX or parts[1] not in DOSE_ACTIONS:
        raise ValueError(f"Invalid dose callback: {data!r}")
    medication_id = int(parts[2])
    scheduled_ts = int(parts[3]) if len(parts) == 4 else None
    return parts[1], medication_id, scheduled_ts


def get_reminder_keyboard(medication_id: int, scheduled_ts: Optional[int] = None) -> InlineKeyboardMarkup:
    """Keyboard for dose reminder notifications"""
    keyboard = [
        [
            InlineKeyboardButton(
                f"{config.EMOJIS['success']} Taken", callback_data=build_dose_callback("taken", medication_id, scheduled_ts)
            )
        ],
        [
            InlineKeyboardButton(
                f"{config.EMOJIS['clock']} Snooze {config.REMINDER_SNOOZE_MINUTES} min",
                callback_data=build_dose_callback("snooze", medication_id, scheduled_ts),
            ),
            InlineKeyboardButton(
                f"{config.EMOJIS['skip']} Skip", callback_data=build_dose_callback("skip", medication_id, scheduled_ts)
            ),
        ],
    ]

    return InlineKeyboardMarkup(keyboard)


def get_next_dose_keyboard(medication_id: int) -> InlineKeyboardMarkup:
    """Single button showing when the next dose is"""
    keyboard = [
        [
            InlineKeyboardButton(
                f"{config.EMOJIS['reminder']} Next dose", callback_data=build_dose_callback("view", medication_id)
            )
        ]
    ]
    return InlineKeyboardMarkup(keyboard)
