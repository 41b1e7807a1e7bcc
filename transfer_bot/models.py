"""Data models for the Telegram transfer bot."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union
import asyncio


class BotState(Enum):
    """Per-user workflow state."""
    IDLE = "idle"
    AWAITING_CONSENT = "awaiting_consent"
    AWAITING_API_ID = "awaiting_api_id"
    AWAITING_API_HASH = "awaiting_api_hash"
    # Processing superstate: a subprocess is running
    PROCESSING = "processing"  # Spawned, no prompt recognised yet
    AWAITING_PHONE = "awaiting_phone"
    AWAITING_OTP = "awaiting_otp"
    AWAITING_CHANNEL = "awaiting_channel"
    AWAITING_OPTION = "awaiting_option"
    AWAITING_DESTINATION = "awaiting_destination"
    TRANSFERRING = "transferring"

    @property
    def is_processing(self) -> bool:
        return self in PROCESSING_STATES


PROCESSING_STATES = frozenset({
    BotState.PROCESSING,
    BotState.AWAITING_PHONE,
    BotState.AWAITING_OTP,
    BotState.AWAITING_CHANNEL,
    BotState.AWAITING_OPTION,
    BotState.AWAITING_DESTINATION,
    BotState.TRANSFERRING,
})


@dataclass
class Credentials:
    """API credentials supplied by the user for the external program."""
    api_id: int
    api_hash: str


@dataclass
class ErrorCounters:
    """Recoverable errors observed from the external program."""
    total: int = 0
    file_expired: int = 0
    timeout: int = 0

    def record(self, category: str):
        self.total += 1
        if category == "file_expired":
            self.file_expired += 1
        elif category == "timeout":
            self.timeout += 1

    def since(self, baseline: "ErrorCounters") -> "ErrorCounters":
        """Counts observed after `baseline` was copied."""
        return ErrorCounters(
            total=self.total - baseline.total,
            file_expired=self.file_expired - baseline.file_expired,
            timeout=self.timeout - baseline.timeout,
        )

    def copy(self) -> "ErrorCounters":
        return ErrorCounters(self.total, self.file_expired, self.timeout)

    def reset(self):
        self.total = 0
        self.file_expired = 0
        self.timeout = 0


@dataclass
class Session:
    """Represents one user's conversation with the bot."""
    user_id: int
    chat_id: Optional[int] = None  # Where replies go (private chat == user_id)
    state: BotState = BotState.IDLE
    credentials: Optional[Credentials] = None
    process: Optional["ProcessHandle"] = None  # Owned exclusively by this session

    # Fields collected as the workflow progresses
    phone: Optional[str] = None
    channel: Optional[str] = None
    option: Optional[str] = None
    destination: Optional[str] = None

    error_counters: ErrorCounters = field(default_factory=ErrorCounters)
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if self.chat_id is None:
            self.chat_id = self.user_id

    def touch(self):
        self.last_activity = datetime.now()


@dataclass
class ProcessHandle:
    """A running external program owned by one session."""
    user_id: int
    process: asyncio.subprocess.Process
    killed: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return not self.killed and self.process.returncode is None


@dataclass
class ProgressSnapshot:
    """Process-wide progress summary read by the status server."""
    status: str = "idle"
    task: str = "Waiting for user commands"
    completed: int = 0
    total: int = 100
    active_users: int = 0
    last_update: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "task": self.task,
            "completed": self.completed,
            "total": self.total,
            "activeUsers": self.active_users,
            "lastUpdate": self.last_update.isoformat(),
        }


@dataclass
class SendResult:
    """Outcome of one outbound delivery attempt."""
    ok: bool
    rate_limited: bool = False
    retry_after: Optional[float] = None  # Transport-suggested wait (seconds)
    blocked: bool = False  # Recipient blocked the bot; never retried
    error: Optional[str] = None


@dataclass
class QueuedMessage:
    """A message waiting in a user's delivery queue."""
    user_id: int
    text: str
    retries: int = 3
    parse_mode: Optional[str] = None
    future: Optional[asyncio.Future] = None
    queued_at: datetime = field(default_factory=datetime.now)


# -----------------------
# State machine events
# -----------------------

@dataclass
class StartCommand:
    """User issued /start."""
    user_id: int
    chat_id: Optional[int] = None


@dataclass
class CancelCommand:
    """User issued /cancel."""
    user_id: int
    chat_id: Optional[int] = None


@dataclass
class StatusCommand:
    """User issued /status."""
    user_id: int
    chat_id: Optional[int] = None


@dataclass
class UserText:
    """Free text received from a user."""
    user_id: int
    text: str
    chat_id: Optional[int] = None


@dataclass
class ProcessOutput:
    """A decoded output chunk from a user's external program."""
    user_id: int
    handle: ProcessHandle
    text: str
    stream: str = "stdout"


@dataclass
class ProcessExited:
    """The external program exited on its own."""
    user_id: int
    handle: ProcessHandle
    returncode: int


@dataclass
class ProcessFailed:
    """Reading from or waiting on the external program raised."""
    user_id: int
    handle: ProcessHandle
    error: str


UserEvent = Union[StartCommand, CancelCommand, StatusCommand, UserText]
ProcessEvent = Union[ProcessOutput, ProcessExited, ProcessFailed]
BotEvent = Union[UserEvent, ProcessEvent]
