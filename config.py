"""
Configuration settings for the Dose Reminder service
"""

import os
from typing import List
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Main configuration class"""

    # Bot Configuration
    BOT_TOKEN: str = os.getenv("BOT_TOKEN", "")
    BOT_USERNAME: str = os.getenv("BOT_USERNAME", "dose_reminder_bot")

    # Webhook Configuration
    WEBHOOK_URL: str = os.getenv("WEBHOOK_URL", "")
    WEBHOOK_PATH: str = f"/webhook/{BOT_TOKEN}" if BOT_TOKEN else "/webhook"
    WEBHOOK_PORT: int = int(os.getenv("PORT", 10000))

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./dose_reminder.db")
    DB_BACKEND: str = os.getenv("DB_BACKEND", "sqlite").lower()  # 'sqlite' or 'mongo'
    MONGODB_URI: str = os.getenv("MONGODB_URI", "")
    MONGODB_DB: str = os.getenv("MONGODB_DB", "dose_reminder")

    # Notification delivery: 'telegram' (in-process timers) or 'telegram_scheduled' (durable job store)
    NOTIFICATION_BACKEND: str = os.getenv("NOTIFICATION_BACKEND", "telegram").lower()
    NATIVE_JOBSTORE_URL: str = os.getenv("NATIVE_JOBSTORE_URL", "sqlite:///./dose_reminder_jobs.db")

    # Debug and Logging
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Timezone Settings
    DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "UTC")

    # Dose window rules (fixed)
    GRACE_PERIOD_MINUTES: int = 15
    TAKEN_MATCH_WINDOW_MINUTES: int = 30
    MAX_SNOOZES: int = 3
    MAX_SNOOZE_MINUTES: int = 240

    # Reminder Settings
    REMINDER_SNOOZE_MINUTES: int = int(os.getenv("REMINDER_SNOOZE_MINUTES", "15"))
    RECOMPUTE_INTERVAL_SECONDS: int = int(os.getenv("RECOMPUTE_INTERVAL_SECONDS", "60"))
    RECONCILE_LOOKBACK_HOURS: int = int(os.getenv("RECONCILE_LOOKBACK_HOURS", "24"))
    PERSISTENCE_RETRY_DELAY_SECONDS: float = float(os.getenv("PERSISTENCE_RETRY_DELAY_SECONDS", "0.5"))

    # Report Settings
    ADHERENCE_WINDOW_DAYS: int = int(os.getenv("ADHERENCE_WINDOW_DAYS", "30"))
    TREND_IMPROVING_ABOVE: float = 80.0
    TREND_DECLINING_BELOW: float = 60.0
    MISSED_DIGEST_TIME: str = os.getenv("MISSED_DIGEST_TIME", "21:00")

    # Log notes written by the state machine
    AUTO_MISSED_NOTE: str = "auto-missed: no response in grace period"
    RECONCILED_MISSED_NOTE: str = "auto-missed: grace period elapsed while suspended"

    # Message Templates
    REMINDER_TITLE: str = "💊 Medication Reminder"
    MISSED_TITLE: str = "⚠️ Missed Medication"
    CAREGIVER_MISSED_TITLE: str = "⚠️ Family Medication Alert"
    DIGEST_TITLE: str = "Missed Medication Summary"

    # Error Messages
    ERROR_MESSAGES = {
        "general": "Something went wrong. Please try again later.",
        "snooze_limit": "Maximum snoozes reached",
        "no_active_reminder": "No active reminder to snooze",
        "no_dose": "No scheduled dose to confirm",
        "invalid_snooze": "Snooze interval must be between 1 and {max} minutes",
        "database_error": "Could not save the dose. Please try again.",
        "medication_not_found": "Medication not found.",
        "unauthorized": "You are not allowed to manage this medication.",
    }

    # Emojis for UI
    EMOJIS = {
        "medicine": "💊",
        "reminder": "⏰",
        "warning": "⚠️",
        "success": "✅",
        "error": "❌",
        "info": "ℹ️",
        "report": "📊",
        "caregiver": "👥",
        "clock": "🕒",
        "skip": "⏭️",
    }

    @classmethod
    def validate_config(cls) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if cls.NOTIFICATION_BACKEND not in ("telegram", "telegram_scheduled"):
            errors.append("NOTIFICATION_BACKEND must be 'telegram' or 'telegram_scheduled'")

        if not cls.BOT_TOKEN:
            errors.append("BOT_TOKEN is required")

        if not cls.WEBHOOK_URL and os.getenv("RENDER"):
            errors.append("WEBHOOK_URL is required for Render deployment")

        if cls.WEBHOOK_PORT < 1 or cls.WEBHOOK_PORT > 65535:
            errors.append("WEBHOOK_PORT must be between 1 and 65535")

        if cls.REMINDER_SNOOZE_MINUTES < 1 or cls.REMINDER_SNOOZE_MINUTES > cls.MAX_SNOOZE_MINUTES:
            errors.append(f"REMINDER_SNOOZE_MINUTES must be between 1 and {cls.MAX_SNOOZE_MINUTES}")

        if cls.RECOMPUTE_INTERVAL_SECONDS < 1:
            errors.append("RECOMPUTE_INTERVAL_SECONDS must be positive")

        if cls.RECONCILE_LOOKBACK_HOURS < 1:
            errors.append("RECONCILE_LOOKBACK_HOURS must be positive")

        if cls.ADHERENCE_WINDOW_DAYS < 1:
            errors.append("ADHERENCE_WINDOW_DAYS must be positive")

        # Mongo validation
        if cls.DB_BACKEND not in ("sqlite", "mongo"):
            errors.append("DB_BACKEND must be 'sqlite' or 'mongo'")
        if cls.DB_BACKEND == "mongo" and not cls.MONGODB_URI:
            errors.append("MONGODB_URI is required when DB_BACKEND=mongo")

        return errors

    @classmethod
    def is_production(cls) -> bool:
        """Check if running in production environment"""
        return bool(os.getenv("RENDER") or os.getenv("PRODUCTION"))

    @classmethod
    def get_webhook_url(cls) -> str:
        """Get full webhook URL"""
        if cls.WEBHOOK_URL:
            return f"{cls.WEBHOOK_URL.rstrip('/')}{cls.WEBHOOK_PATH}"
        return ""


# Global config instance
config = Config()

# Validate configuration on import
if not os.getenv("DISABLE_CONFIG_VALIDATION"):
    config_errors = config.validate_config()
    if config_errors:
        error_msg = "\n".join([f"- {error}" for error in config_errors])
        raise ValueError(f"Configuration errors:\n{error_msg}")

# Development settings
if config.DEBUG:
    import logging

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
