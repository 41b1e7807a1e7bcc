"""Telegram transport: inbound commands/text and outbound delivery."""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from telegram import Bot, Update
from telegram.error import Conflict, Forbidden, InvalidToken, NetworkError, RetryAfter, TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .models import BotEvent, CancelCommand, SendResult, StartCommand, StatusCommand, UserText

logger = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """Raised when the bot cannot connect to Telegram."""


def _retry_after_seconds(error: RetryAfter) -> float:
    retry_after = error.retry_after
    if isinstance(retry_after, timedelta):
        return retry_after.total_seconds()
    return float(retry_after)


class TelegramBot:
    """Telegram bot front end for the transfer workflow."""

    def __init__(
        self,
        token: str,
        allowed_user_ids: Optional[list[int]] = None,
        config: Optional[dict] = None,
    ):
        """
        Initialize the Telegram bot.

        Args:
            token: Telegram bot token from BotFather
            allowed_user_ids: List of user IDs allowed to use the bot (None = allow all)
            config: Optional config dict with a telegram section
        """
        self.token = token
        self.allowed_user_ids = set(allowed_user_ids) if allowed_user_ids else None
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

        config = config or {}
        startup_config = config.get("telegram", {}).get("startup", {})
        self.max_start_attempts = startup_config.get("max_attempts", 5)
        self.start_backoff_base = startup_config.get("backoff_base_seconds", 10)
        self.start_backoff_step = startup_config.get("backoff_step_seconds", 5)
        self.start_backoff_max = startup_config.get("backoff_max_seconds", 30)
        self.conflict_settle_seconds = startup_config.get("conflict_settle_seconds", 3)
        self._polling_conflict: Optional[Conflict] = None

        # Every inbound event goes to one handler (the state machine)
        self._on_event: Optional[Callable[[BotEvent], Awaitable[None]]] = None

    def set_event_handler(self, handler: Callable[[BotEvent], Awaitable[None]]):
        """Set handler for inbound events. Handler receives a BotEvent."""
        self._on_event = handler

    def _is_allowed(self, user_id: Optional[int]) -> bool:
        """Check if a user is allowed to use the bot."""
        if self.allowed_user_ids is None:
            return True
        return user_id is not None and user_id in self.allowed_user_ids

    async def _dispatch(self, update: Update, event: BotEvent):
        if not self._is_allowed(update.effective_user.id):
            logger.warning(f"Unauthorized: chat_id={update.effective_chat.id}, user_id={update.effective_user.id}")
            await update.message.reply_text("Unauthorized.")
            return

        if not self._on_event:
            logger.error("Event handler not configured!")
            return

        try:
            await self._on_event(event)
        except Exception as e:
            logger.error(f"Error handling {type(event).__name__} from {event.user_id}: {e}", exc_info=True)

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start command."""
        await self._dispatch(update, StartCommand(
            user_id=update.effective_user.id,
            chat_id=update.effective_chat.id,
        ))

    async def _cmd_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /cancel command."""
        await self._dispatch(update, CancelCommand(
            user_id=update.effective_user.id,
            chat_id=update.effective_chat.id,
        ))

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /status command."""
        await self._dispatch(update, StatusCommand(
            user_id=update.effective_user.id,
            chat_id=update.effective_chat.id,
        ))

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /help command."""
        await update.message.reply_text(
            "Media Transfer Bot\n\n"
            "Commands:\n"
            "/start - Begin (or restart) the download/upload workflow\n"
            "/cancel - Stop the running workflow\n"
            "/status - Show the current workflow state\n"
            "/help - Show this message"
        )

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle regular text messages."""
        if not update.message or update.message.text is None:
            return
        await self._dispatch(update, UserText(
            user_id=update.effective_user.id,
            text=update.message.text,
            chat_id=update.effective_chat.id,
        ))

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> SendResult:
        """
        Send one message and report how it went.

        Args:
            chat_id: Chat to send to
            text: Message text
            parse_mode: Optional parse mode ("Markdown", "MarkdownV2", "HTML")

        Returns:
            SendResult; rate limiting and blocked recipients are tagged so the
            delivery queue can tell them apart
        """
        if not self.bot:
            logger.error("Bot not initialized")
            return SendResult(ok=False, error="bot not initialized")

        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode=parse_mode)
            return SendResult(ok=True)
        except RetryAfter as e:
            return SendResult(ok=False, rate_limited=True, retry_after=_retry_after_seconds(e), error=str(e))
        except Forbidden as e:
            return SendResult(ok=False, blocked=True, error=str(e))
        except TelegramError as e:
            logger.warning(f"Failed to send Telegram message to {chat_id}: {e}")
            return SendResult(ok=False, error=str(e))

    async def start(self):
        """
        Connect and start polling.

        Conflicts (another instance polling with the same token) and network
        errors are retried with increasing waits; a rejected token is not.

        Raises:
            StartupError: token rejected or retries exhausted
        """
        self.application = Application.builder().token(self.token).build()
        self.bot = self.application.bot

        self.application.add_handler(CommandHandler("start", self._cmd_start))
        self.application.add_handler(CommandHandler("cancel", self._cmd_cancel))
        self.application.add_handler(CommandHandler("status", self._cmd_status))
        self.application.add_handler(CommandHandler("help", self._cmd_help))
        self.application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message))

        attempt = 0
        while True:
            if attempt > 0:
                wait = self.start_backoff_seconds(attempt)
                logger.info(f"Waiting {wait}s before retry {attempt + 1}/{self.max_start_attempts}...")
                await asyncio.sleep(wait)
            try:
                if not self.application.running:
                    await self.application.initialize()
                    await self.application.start()
                await self._start_polling()
                break
            except InvalidToken as e:
                raise StartupError(f"Telegram rejected the bot token: {e}") from e
            except (Conflict, NetworkError) as e:
                attempt += 1
                logger.warning(f"Bot startup failed (attempt {attempt}/{self.max_start_attempts}): {e}")
                if isinstance(e, Conflict):
                    logger.warning("Another instance is probably polling with this token")
                if attempt >= self.max_start_attempts:
                    raise StartupError(
                        f"Could not start bot after {attempt} attempts; "
                        "ensure only one instance runs with this token"
                    ) from e

        logger.info("Telegram bot started")

    def _on_polling_error(self, error: TelegramError):
        """Error callback for the updater's getUpdates loop, which never raises to us."""
        if isinstance(error, Conflict):
            self._polling_conflict = error
            logger.warning(f"Polling conflict: {error}")
        else:
            logger.warning(f"Polling error: {error}")

    async def _start_polling(self):
        """
        Start the updater and wait briefly for a competing poller.

        Raises:
            Conflict: another getUpdates session answered during the settle window
        """
        self._polling_conflict = None
        await self.application.updater.start_polling(
            drop_pending_updates=True,
            error_callback=self._on_polling_error,
        )
        if self.conflict_settle_seconds:
            await asyncio.sleep(self.conflict_settle_seconds)
        if self._polling_conflict is not None:
            conflict = self._polling_conflict
            self._polling_conflict = None
            await self.application.updater.stop()
            raise conflict

    def start_backoff_seconds(self, attempt: int) -> int:
        """Wait before retry number `attempt` (1-based): 15, 20, 25, 30, 30..."""
        return min(self.start_backoff_base + attempt * self.start_backoff_step, self.start_backoff_max)

    async def stop(self):
        """Stop the bot."""
        if self.application:
            if self.application.updater and self.application.updater.running:
                await self.application.updater.stop()
            if self.application.running:
                await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")
