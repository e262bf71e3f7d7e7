"""
Handlers Package
Callback and command handlers for the Dose Reminder service
"""

from .reminder_handler import ReminderHandler, reminder_handler

__version__ = "1.0.0"


def get_all_callback_handlers():
    """Get all callback handlers"""
    callback_handlers = []

    # Reminder handlers
    if reminder_handler:
        callback_handlers.extend(reminder_handler.get_handlers())

    return callback_handlers


__all__ = [
    "ReminderHandler",
    "reminder_handler",
    "get_all_callback_handlers",
]
