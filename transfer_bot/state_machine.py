"""Per-user workflow state machine driven by user messages and program output."""

import logging
import re
from typing import Optional

from .message_queue import DeliveryQueue
from .models import (
    BotEvent,
    BotState,
    CancelCommand,
    Credentials,
    ProcessExited,
    ProcessFailed,
    ProcessOutput,
    Session,
    StartCommand,
    StatusCommand,
    UserText,
)
from .output_classifier import OutputClassifier, WorkflowMarker, clean_output
from .process_supervisor import ProcessSpawnError, ProcessSupervisor
from .progress import ProgressPublisher
from .session_manager import SessionManager
from .summary_timer import SummaryTimers

logger = logging.getLogger(__name__)

CONSENT_PHRASE = "I CONSENT"
MIN_API_HASH_LENGTH = 10  # Hash must be strictly longer than this
MIN_OTP_DIGITS = 4

SECURITY_WARNING = (
    "🚨 *SECURITY WARNING* 🚨\n\n"
    "This bot will:\n"
    "• Log into your Telegram account using YOUR API credentials\n"
    "• Access your messages and media\n"
    "• Download/upload files using your account\n\n"
    "⚠️ Only proceed if you trust this bot completely.\n\n"
    "📋 You will need:\n"
    "• Your Telegram API ID\n"
    "• Your Telegram API Hash\n"
    "(Get these from https://my.telegram.org/auth)\n\n"
    f'Type "{CONSENT_PHRASE}" to continue or /cancel to abort.'
)

PROCESS_UNAVAILABLE = "❌ Error: Process not available. Please /start again."

_non_digit_re = re.compile(r'\D')


def normalize_otp(text: str) -> Optional[str]:
    """
    Keep only the digits of an OTP, e.g. "3&5&6&7&8" -> "35678".

    Users are told to separate digits so the chat client does not treat the
    code as a shareable login code. Returns None when fewer than
    MIN_OTP_DIGITS digits remain.
    """
    digits = _non_digit_re.sub('', text)
    if len(digits) < MIN_OTP_DIGITS:
        return None
    return digits


def check_invariant(session: Session) -> bool:
    """A session owns a process exactly when it is in the processing superstate."""
    return session.state.is_processing == (session.process is not None)


class SessionStateMachine:
    """
    Single transition function for every session.

    Both trigger sources (chat events and program events) are dispatched
    here, so state changes have one home. Replies always go through the
    delivery queue.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        supervisor: ProcessSupervisor,
        delivery_queue: DeliveryQueue,
        classifier: OutputClassifier,
        progress: ProgressPublisher,
        summary_timers: SummaryTimers,
    ):
        self.session_manager = session_manager
        self.supervisor = supervisor
        self.delivery_queue = delivery_queue
        self.classifier = classifier
        self.progress = progress
        self.summary_timers = summary_timers

    async def dispatch(self, event: BotEvent):
        """Apply one event to the session it belongs to."""
        if isinstance(event, (ProcessOutput, ProcessExited, ProcessFailed)):
            session = self.session_manager.get_session(event.user_id)
            if session is None or session.process is not event.handle:
                logger.debug(f"Ignoring {type(event).__name__} from stale process of user {event.user_id}")
                return
            if isinstance(event, ProcessOutput):
                await self._on_output(session, event)
            elif isinstance(event, ProcessExited):
                await self._on_exit(session, event)
            else:
                await self._on_failure(session, event)
        else:
            session = self.session_manager.get_or_create(event.user_id, event.chat_id)
            session.touch()
            if isinstance(event, StartCommand):
                await self._on_start(session)
            elif isinstance(event, CancelCommand):
                await self._on_cancel(session)
            elif isinstance(event, StatusCommand):
                self._reply(session, f"Current state: {session.state.value}")
            elif isinstance(event, UserText):
                await self._on_text(session, event.text.strip())
            else:
                raise TypeError(f"Unknown event type: {type(event).__name__}")

        if not check_invariant(session):
            logger.error(
                f"Session invariant violated for user {session.user_id}: "
                f"state={session.state.value}, has_process={session.process is not None}"
            )

    def kill_all(self) -> int:
        """
        Shutdown sweep: kill every session's process and return it to idle.

        Returns:
            How many live processes were signalled
        """
        count = 0
        for session in self.session_manager:
            if session.process is None and not session.state.is_processing:
                continue
            if self._kill(session):
                count += 1
        return count

    # -----------------------
    # Helpers
    # -----------------------
    def _reply(self, session: Session, text: str, parse_mode: Optional[str] = None):
        self.delivery_queue.enqueue(session.user_id, text, parse_mode)

    def _kill(self, session: Session) -> bool:
        """Kill the session's process (if any) and return it to idle."""
        signalled = self.supervisor.kill(session)
        self.summary_timers.stop(session.user_id)
        session.state = BotState.IDLE
        return signalled

    def _forward(self, session: Session, text: str) -> bool:
        return self.supervisor.write(session, text)

    # -----------------------
    # Chat events
    # -----------------------
    async def _on_start(self, session: Session):
        self._kill(session)
        session.phone = session.channel = session.option = session.destination = None
        session.error_counters.reset()
        session.state = BotState.AWAITING_CONSENT
        self.progress.update("active", "User starting authentication process", 0, 100)
        self._reply(session, SECURITY_WARNING, parse_mode="Markdown")

    async def _on_cancel(self, session: Session):
        self._kill(session)
        self._reply(session, "❌ Operation cancelled. Use /start to begin again.")

    async def _on_text(self, session: Session, text: str):
        state = session.state

        if state == BotState.IDLE:
            self._reply(session, "🤖 Use /start to begin the media download/upload process.")

        elif state == BotState.AWAITING_CONSENT:
            if text.upper() == CONSENT_PHRASE:
                session.state = BotState.AWAITING_API_ID
                self._reply(session, "✅ Consent received.\n\n🔑 Please enter your Telegram API ID:")
            else:
                self._reply(session, f'❌ You must type "{CONSENT_PHRASE}" exactly to proceed, or /cancel to abort.')

        elif state == BotState.AWAITING_API_ID:
            if text.isascii() and text.isdigit():
                session.credentials = Credentials(api_id=int(text), api_hash="")
                session.state = BotState.AWAITING_API_HASH
                self._reply(session, "✅ API ID saved.\n\n🗝️ Now enter your Telegram API Hash:")
            else:
                self._reply(session, "❌ API ID must be a number. Please enter your API ID (numbers only):")

        elif state == BotState.AWAITING_API_HASH:
            if len(text) > MIN_API_HASH_LENGTH:
                session.credentials.api_hash = text
                self._reply(session, "✅ API Hash saved.\n\n🚀 Starting the script with your credentials...")
                await self._spawn(session)
            else:
                self._reply(session, "❌ API Hash seems too short. Please enter your complete API Hash:")

        elif state == BotState.AWAITING_PHONE:
            session.phone = text
            if self._forward(session, text):
                self._reply(session, f"📱 Phone number sent: {text}\nWaiting for OTP...")
            else:
                self._reply(session, PROCESS_UNAVAILABLE)

        elif state == BotState.AWAITING_OTP:
            otp = normalize_otp(text)
            if otp is None:
                self._reply(session, "❌ Invalid OTP format. Please enter your OTP using format like: 3&5&6&7&8")
            elif self._forward(session, otp):
                self._reply(session, "🔐 OTP processed and sent\nVerifying...")
            else:
                self._reply(session, PROCESS_UNAVAILABLE)

        elif state == BotState.AWAITING_CHANNEL:
            session.channel = text
            if self._forward(session, text):
                self._reply(session, f"📺 Channel/chat ID sent: {text}\nWaiting for options...")
            else:
                self._reply(session, PROCESS_UNAVAILABLE)

        elif state == BotState.AWAITING_OPTION:
            session.option = text
            if self._forward(session, text):
                self._reply(session, f"⚙️ Option selected: {text}")
            else:
                self._reply(session, PROCESS_UNAVAILABLE)

        elif state == BotState.AWAITING_DESTINATION:
            session.destination = text
            if self._forward(session, text):
                session.state = BotState.PROCESSING
                self._reply(session, f"📤 Destination set: {text}\nStarting download/upload process...")
            else:
                self._reply(session, PROCESS_UNAVAILABLE)

        else:
            # PROCESSING / TRANSFERRING: pass anything through to the program
            if not self._forward(session, text):
                self._reply(session, "⏳ Process is running. Please wait for completion or use /cancel to stop.")

    async def _spawn(self, session: Session):
        try:
            await self.supervisor.spawn(session)
        except ProcessSpawnError as e:
            logger.error(f"Failed to start program for user {session.user_id}: {e}")
            self._kill(session)
            self._reply(session, f"❌ Process error: {e}")
            return
        session.state = BotState.PROCESSING

    # -----------------------
    # Program events
    # -----------------------
    async def _on_output(self, session: Session, event: ProcessOutput):
        text = clean_output(event.text)
        if not text:
            return

        classification = self.classifier.classify(text)
        if classification.counter:
            session.error_counters.record(classification.counter)
        if classification.should_deliver:
            self._reply(session, classification.message)

        marker = self.classifier.match_workflow(text)
        if marker:
            self._apply_marker(session, marker, text)

    def _apply_marker(self, session: Session, marker: WorkflowMarker, text: str):
        if marker.name == "completion":
            self._complete(session)
            return

        if marker.name == "transfer":
            session.state = BotState.TRANSFERRING
            status, task, percent = self.classifier.transfer_progress(text)
            self.progress.update(status, task, percent, 100)
            self.summary_timers.start(session)
            return

        if marker.reply:
            self._reply(session, marker.reply)
        if marker.state:
            session.state = marker.state
        if marker.status:
            self.progress.update(marker.status, marker.task, marker.percent, 100)

    def _complete(self, session: Session):
        errors = session.error_counters
        message = "🎉 Process completed! Use /start to begin a new session."
        if errors.total > 0:
            message += (
                f"\n📊 Final Summary: {errors.total} errors were auto-handled "
                f"({errors.file_expired} file references, {errors.timeout} timeouts)"
            )
        self._reply(session, message)

        errors.reset()
        self._kill(session)
        self.progress.update("completed", "All tasks completed successfully", 100, 100)
        self.progress.schedule_idle_reset()

    async def _on_exit(self, session: Session, event: ProcessExited):
        session.process = None
        self.summary_timers.stop(session.user_id)
        session.state = BotState.IDLE
        if event.returncode == 0:
            self._reply(session, "✅ Process completed successfully! Use /start to begin again.")
        else:
            self._reply(session, f"❌ Process exited with code {event.returncode}. Use /start to try again.")

    async def _on_failure(self, session: Session, event: ProcessFailed):
        self._kill(session)
        self._reply(session, f"❌ Process error: {event.error}")
