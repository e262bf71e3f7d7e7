"""
Main entry for the Dose Reminder service
Exports MedicationReminderApp for external usage/tests.

Imports are lazy so that importing this module has no side effects.
"""

from typing import Any


class MedicationReminderApp:
    """Lightweight facade to build/run the Telegram bot and the dose scheduler.

    Importing this class does not trigger heavy imports. Call build()/run_polling() to initialize.
    """

    def __init__(self, token: str | None = None):
        self.token = token
        self.app: Any = None
        self.dispatcher: Any = None
        self.dose_scheduler: Any = None

    def build_dispatcher(self, bot):
        from config import config
        from dispatcher import ScheduledTelegramDispatcher, TelegramDispatcher

        if config.NOTIFICATION_BACKEND == "telegram_scheduled":
            return ScheduledTelegramDispatcher(bot)
        return TelegramDispatcher(bot)

    def build(self):
        """Build the Application, dispatcher and scheduler and register handlers.
        Returns the constructed Application instance.
        """
        # Lazy imports to keep module import cheap/safe
        import logging
        import os
        from telegram.ext import Application
        from config import config
        from handlers import get_all_callback_handlers, reminder_handler
        from scheduler import DoseScheduler

        logging.basicConfig(
            level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        bot_token = self.token or os.getenv("BOT_TOKEN") or config.BOT_TOKEN
        if not bot_token:
            raise ValueError("BOT_TOKEN is required")

        application = Application.builder().token(bot_token).build()

        self.dispatcher = self.build_dispatcher(application.bot)
        self.dose_scheduler = DoseScheduler(dispatcher=self.dispatcher)
        reminder_handler.attach(self.dose_scheduler)

        # Register plain callback/command handlers
        for cb in get_all_callback_handlers():
            application.add_handler(cb)

        self.app = application
        return application

    def _install_lifecycle_hooks(self, app):
        from database import init_database

        prev_post_init = getattr(app, "post_init", None)

        async def _on_startup(app_arg: Any):
            if prev_post_init:
                await prev_post_init(app_arg)
            await init_database()
            await self.dispatcher.start()
            await self.dose_scheduler.start()

        prev_post_shutdown = getattr(app, "post_shutdown", None)

        async def _on_shutdown(app_arg: Any):
            if prev_post_shutdown:
                await prev_post_shutdown(app_arg)
            await self.dose_scheduler.stop()
            await self.dispatcher.stop()

        app.post_init = _on_startup
        app.post_shutdown = _on_shutdown

    def run_polling(self):
        """Build (if needed) and run the bot with polling. Blocks until interrupted."""
        app = self.app or self.build()
        self._install_lifecycle_hooks(app)
        app.run_polling()

    def run_webhook(self):
        """Run the bot using a built-in webhook webserver."""
        import os
        from config import config

        app = self.app or self.build()
        self._install_lifecycle_hooks(app)

        webhook_url = config.get_webhook_url()
        url_path = config.WEBHOOK_PATH.lstrip("/")
        listen_host = "0.0.0.0"
        port = int(os.getenv("PORT", str(config.WEBHOOK_PORT)))

        app.run_webhook(
            listen=listen_host,
            port=port,
            url_path=url_path,
            webhook_url=(webhook_url or None),
            drop_pending_updates=True,
        )


if __name__ == "__main__":
    # Prefer webhook mode when deployed (binds to PORT), fallback to polling locally
    from config import config

    reminder_app = MedicationReminderApp()

    if config.is_production() or config.get_webhook_url():
        reminder_app.run_webhook()
    else:
        reminder_app.run_polling()
