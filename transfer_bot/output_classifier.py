"""Classification of external program output into delivery decisions and workflow markers."""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .models import BotState

logger = logging.getLogger(__name__)

# Regex to match ANSI escape codes and stray control characters
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'       # CSI sequences (colours, cursor movement, clears)
    r'\x1b\][^\x07]*\x07|'           # OSC sequences (title, etc.)
    r'\x1b[\(\)][AB012]|'            # Character set selection
    r'\x1b[=>78DMEHc]|'              # Single-char commands
    r'[\x00-\x08\x0b\x0c\x0e-\x1f]'  # Other control characters
)

# Defaults; every list can be overridden from the classifier config section
VERBOSE_MARKERS = [
    "[INFO]",
    "Processing message",
    "Starting direct file download",
    "Connection to",
    "File lives in another DC",
]

CRITICAL_ERROR_CODES = [
    "CHAT_FORWARDS_RESTRICTED",
    "AUTH_KEY_INVALID",
    "USER_DEACTIVATED_BAN",
    "PHONE_NUMBER_INVALID",
    "SESSION_EXPIRED",
]

THROUGHPUT_UNITS = ["Mbps"]

FAILURE_GLYPH = "❌"
SUCCESS_GLYPH = "✅"

_percent_re = re.compile(r'(\d+)%')


def clean_output(text: str) -> str:
    """Strip terminal sequences, drop carriage returns, collapse blank lines and trim."""
    text = ANSI_ESCAPE_RE.sub('', text)
    text = text.replace('\r', '')
    text = re.sub(r'\n+', '\n', text)
    return text.strip()


def parse_percent(text: str) -> Optional[int]:
    match = _percent_re.search(text)
    return int(match.group(1)) if match else None


class Delivery(Enum):
    """What happens to a chunk as far as the user is concerned."""
    SUPPRESS = "suppress"
    CRITICAL = "critical"
    SUCCESS = "success"
    INFO = "info"


DELIVERY_PREFIXES = {
    Delivery.CRITICAL: "🚨",
    Delivery.SUCCESS: "✅",
    Delivery.INFO: "📝",
}


@dataclass
class Classification:
    """Result of running a chunk through the delivery rules."""
    rule: str
    delivery: Delivery
    text: str
    counter: Optional[str] = None  # Error counter category to increment

    @property
    def should_deliver(self) -> bool:
        return self.delivery != Delivery.SUPPRESS

    @property
    def message(self) -> Optional[str]:
        if not self.should_deliver:
            return None
        return f"{DELIVERY_PREFIXES[self.delivery]} {self.text}"


@dataclass
class DeliveryRule:
    name: str
    matches: Callable[[str], bool]
    delivery: Delivery
    counter: Optional[str] = None
    log_message: Optional[str] = None


@dataclass
class WorkflowMarker:
    """A prompt or phase change recognised in the program's output."""
    name: str
    matches: Callable[[str], bool]
    state: Optional[BotState] = None
    status: Optional[str] = None
    task: Optional[str] = None
    percent: Optional[int] = None
    reply: Optional[str] = None


def _contains_any(*needles: str) -> Callable[[str], bool]:
    return lambda text: any(n in text for n in needles)


def _contains_all(*needles: str) -> Callable[[str], bool]:
    return lambda text: all(n in text for n in needles)


class OutputClassifier:
    """
    Ordered (predicate, action) tables over cleaned program output.

    Delivery rules and workflow markers are evaluated independently; within
    each table the first match wins.
    """

    def __init__(self, config: Optional[dict] = None):
        config = config or {}
        classifier_config = config.get("classifier", {})
        self.verbose_markers = list(classifier_config.get("verbose_markers", VERBOSE_MARKERS))
        self.critical_codes = list(classifier_config.get("critical_error_codes", CRITICAL_ERROR_CODES))
        self.throughput_units = list(classifier_config.get("throughput_units", THROUGHPUT_UNITS))

        self.delivery_rules = self._build_delivery_rules()
        self.workflow_markers = self._build_workflow_markers()

    def _build_delivery_rules(self) -> list[DeliveryRule]:
        return [
            DeliveryRule(
                "progress_bar",
                lambda t: "%" in t and any(u in t for u in self.throughput_units),
                Delivery.SUPPRESS,
            ),
            DeliveryRule(
                "verbose",
                lambda t: any(m in t for m in self.verbose_markers),
                Delivery.SUPPRESS,
            ),
            DeliveryRule(
                "file_reference_expired",
                _contains_any("FILE_REFERENCE_EXPIRED"),
                Delivery.SUPPRESS,
                counter="file_expired",
                log_message="File reference expired, program will retry automatically",
            ),
            DeliveryRule(
                "timeout",
                _contains_all("Timeout", "503"),
                Delivery.SUPPRESS,
                counter="timeout",
                log_message="Network timeout, program will retry automatically",
            ),
            DeliveryRule(
                "download_attempt_failed",
                _contains_all("Download attempt", "failed"),
                Delivery.SUPPRESS,
                log_message="Download attempt failed, program will retry automatically",
            ),
            DeliveryRule(
                "terminal_failure",
                lambda t: FAILURE_GLYPH in t and ("Max retries reached" in t or "permanently failed" in t),
                Delivery.CRITICAL,
            ),
            DeliveryRule(
                "critical_error",
                lambda t: self._looks_like_error(t) and any(c in t for c in self.critical_codes),
                Delivery.CRITICAL,
            ),
            DeliveryRule(
                "auto_handled_error",
                self._looks_like_error,
                Delivery.SUPPRESS,
                log_message="Non-critical error (auto-handled)",
            ),
            DeliveryRule(
                "success",
                _contains_any(SUCCESS_GLYPH, "Downloaded", "complete"),
                Delivery.SUCCESS,
            ),
            DeliveryRule("info", lambda t: True, Delivery.INFO),
        ]

    @staticmethod
    def _looks_like_error(text: str) -> bool:
        return any(n in text for n in (FAILURE_GLYPH, "Error", "Failed", "Exception"))

    def _build_workflow_markers(self) -> list[WorkflowMarker]:
        return [
            WorkflowMarker(
                "phone_prompt",
                _contains_any("Enter your phone number"),
                state=BotState.AWAITING_PHONE,
                status="authenticating",
                task="Waiting for phone number",
                percent=20,
            ),
            WorkflowMarker(
                "otp_prompt",
                _contains_any("Enter OTP", "Enter the code"),
                state=BotState.AWAITING_OTP,
                status="authenticating",
                task="Waiting for OTP verification",
                percent=40,
            ),
            WorkflowMarker(
                "login_success",
                _contains_any("Login successful", "logged in"),
                state=BotState.AWAITING_CHANNEL,
                status="authenticated",
                task="Selecting channel/chat",
                percent=60,
                reply="✅ Login successful! Now enter the channel/chat ID:",
            ),
            WorkflowMarker(
                "option_prompt",
                _contains_any("Choose:", "Select option"),
                state=BotState.AWAITING_OPTION,
                status="configuring",
                task="Selecting operation mode",
                percent=70,
            ),
            WorkflowMarker(
                "destination_prompt",
                _contains_all("destination", "channel"),
                state=BotState.AWAITING_DESTINATION,
                status="configuring",
                task="Setting destination channel",
                percent=80,
            ),
            WorkflowMarker(
                "channel_search_choice",
                _contains_any("Search channel by name"),
                reply="💡 The program is asking about channel search. Please respond with your choice.",
            ),
            WorkflowMarker(
                "channel_search_prompt",
                _contains_any("Please enter name of channel to search"),
                state=BotState.AWAITING_CHANNEL,
                status="searching",
                task="Searching for channel",
                percent=65,
                reply="🔍 Enter the channel name you want to search for:",
            ),
            WorkflowMarker(
                "transfer",
                _contains_any("Downloading", "Uploading", "Progress"),
                state=BotState.TRANSFERRING,
            ),
            WorkflowMarker(
                "completion",
                _contains_any("Done", "Completed", "Finished"),
                state=BotState.IDLE,
                status="completed",
                task="All tasks completed successfully",
                percent=100,
            ),
        ]

    def classify(self, text: str) -> Classification:
        """Run cleaned text through the delivery rules; first match wins."""
        for rule in self.delivery_rules:
            if rule.matches(text):
                if rule.log_message:
                    logger.info(f"{rule.log_message}: {text[:200]}")
                elif rule.delivery == Delivery.SUPPRESS:
                    logger.debug(f"Suppressed ({rule.name}): {text[:200]}")
                return Classification(rule=rule.name, delivery=rule.delivery, text=text, counter=rule.counter)
        # Unreachable: the last rule matches everything
        return Classification(rule="info", delivery=Delivery.INFO, text=text)

    def match_workflow(self, text: str) -> Optional[WorkflowMarker]:
        """Return the first workflow marker found in the text, if any."""
        for marker in self.workflow_markers:
            if marker.matches(text):
                return marker
        return None

    @staticmethod
    def transfer_progress(text: str) -> tuple[str, str, int]:
        """Status, task and percentage for a transfer chunk."""
        percent = parse_percent(text)
        if percent is None:
            percent = 85
        if "Downloading" in text:
            return "downloading", f"Downloading: {text[:50]}...", percent
        if "Uploading" in text:
            return "uploading", f"Uploading: {text[:50]}...", percent
        return "processing", "Processing media files", percent
