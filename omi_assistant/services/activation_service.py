"""Decide whether a batch of transcript fragments is a request for the assistant.

Everything here is pure: no I/O, no shared state. The orchestrator passes in
the clock reading and the session's last accepted request time.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Optional, Sequence, Union

from omi_assistant.logging_config import get_logger

logger = get_logger("activation")

DEFAULT_ACTIVATION_PATTERN = (
    r"(?:^|\b)(?:\s*(hey|ok|yo|hi|hello)\s*,?\s*)?(omi|jarvis|echo|assistant)\b[,:\-\s]*"
)
DEFAULT_FOLLOWUP_WINDOW_MS = 8000

_TIME_OF_DAY_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?$")


class ListenMode(str, Enum):
    TRIGGER = "TRIGGER"
    FOLLOWUP = "FOLLOWUP"
    ALWAYS = "ALWAYS"

    @classmethod
    def parse(cls, value: Optional[str], default: "ListenMode" = None) -> "ListenMode":
        default = default or cls.TRIGGER
        if not value:
            return default
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            logger.warning(f"Unknown listen mode '{value}', using {default.value}")
            return default


@dataclass
class UserActivationPrefs:
    listen_mode: Optional[str] = None
    followup_window_ms: Optional[int] = None
    inject_memories: bool = False
    activation_regex: Optional[str] = None
    mute: bool = False
    quiet_hours_start: Optional[Union[int, str]] = None
    quiet_hours_end: Optional[Union[int, str]] = None
    meeting_transcribe: bool = False


@dataclass
class SessionActivationPrefs:
    """Session-level overrides. None means "inherit from the user"."""

    listen_mode: Optional[str] = None
    followup_window_ms: Optional[int] = None
    activation_regex: Optional[str] = None
    mute: Optional[bool] = None
    quiet_hours_start: Optional[Union[int, str]] = None
    quiet_hours_end: Optional[Union[int, str]] = None
    meeting_transcribe: Optional[bool] = None


@dataclass(frozen=True)
class ActivationConfig:
    listen_mode: ListenMode = ListenMode.TRIGGER
    followup_window_ms: int = DEFAULT_FOLLOWUP_WINDOW_MS
    activation_pattern: re.Pattern = re.compile(DEFAULT_ACTIVATION_PATTERN, re.IGNORECASE)
    inject_memories: bool = False
    mute: bool = False
    quiet_hours_start: Optional[int] = None  # minutes of day
    quiet_hours_end: Optional[int] = None
    meeting_transcribe: bool = False


@dataclass(frozen=True)
class ActivationDecision:
    should_respond: bool
    utterance: str = ""
    trigger_matched: bool = False
    reason: str = ""


def build_activation_pattern(pattern: Optional[str]) -> re.Pattern:
    """Compile a user supplied activation regex, falling back to the default phrase set."""
    if pattern and isinstance(pattern, str):
        try:
            return re.compile(pattern, re.IGNORECASE)
        except re.error as exc:
            logger.warning(
                "Invalid activation pattern, using default",
                extra={"context": {"pattern": pattern, "error": str(exc)}},
            )
    return re.compile(DEFAULT_ACTIVATION_PATTERN, re.IGNORECASE)


def parse_time_of_day(value: Optional[Union[int, str]]) -> Optional[int]:
    """Return minutes since midnight for an hour (``22``) or ``"HH:MM"`` value."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value * 60 if 0 <= value <= 23 else None
    match = _TIME_OF_DAY_RE.match(str(value).strip())
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def within_quiet_hours(
    start_minutes: Optional[int],
    end_minutes: Optional[int],
    now: datetime,
) -> bool:
    if start_minutes is None or end_minutes is None:
        return False
    if start_minutes == end_minutes:
        return False
    now_minutes = now.hour * 60 + now.minute
    if start_minutes < end_minutes:
        return start_minutes <= now_minutes < end_minutes
    # Window crosses midnight
    return now_minutes >= start_minutes or now_minutes < end_minutes


def merge_activation_config(
    user: Optional[UserActivationPrefs],
    session: Optional[SessionActivationPrefs],
    *,
    default_listen_mode: str = ListenMode.TRIGGER.value,
    default_followup_window_ms: int = DEFAULT_FOLLOWUP_WINDOW_MS,
) -> ActivationConfig:
    """Resolve the effective config for a session.

    Session values override user values field by field. ``inject_memories``
    is only ever taken from the user record.
    """
    user = user or UserActivationPrefs()
    session = session or SessionActivationPrefs()

    def pick(session_value, user_value, default=None):
        if session_value is not None:
            return session_value
        if user_value is not None:
            return user_value
        return default

    listen_mode = ListenMode.parse(
        pick(session.listen_mode, user.listen_mode),
        default=ListenMode.parse(default_listen_mode),
    )
    followup_window_ms = pick(session.followup_window_ms, user.followup_window_ms, default_followup_window_ms)
    followup_window_ms = max(0, int(followup_window_ms))

    return ActivationConfig(
        listen_mode=listen_mode,
        followup_window_ms=followup_window_ms,
        activation_pattern=build_activation_pattern(pick(session.activation_regex, user.activation_regex)),
        inject_memories=bool(user.inject_memories),
        mute=bool(pick(session.mute, user.mute, False)),
        quiet_hours_start=parse_time_of_day(pick(session.quiet_hours_start, user.quiet_hours_start)),
        quiet_hours_end=parse_time_of_day(pick(session.quiet_hours_end, user.quiet_hours_end)),
        meeting_transcribe=bool(pick(session.meeting_transcribe, user.meeting_transcribe, False)),
    )


def find_trigger(fragments: Sequence[str], pattern: re.Pattern) -> tuple[Optional[int], str]:
    """Scan fragments in order for the first activation match.

    Returns the index of the matching fragment (None when nothing matched) and
    the trimmed text following the match.
    """
    for index, text in enumerate(fragments):
        if not isinstance(text, str):
            continue
        match = pattern.search(text)
        if match:
            return index, text[match.end():].strip()
    return None, ""


def evaluate_activation(
    fragments: Sequence[str],
    config: ActivationConfig,
    *,
    now_ts: float,
    last_accepted_ts: Optional[float] = None,
    tz: tzinfo = timezone.utc,
    quiet_hours_enabled: bool = True,
) -> ActivationDecision:
    if config.mute:
        return ActivationDecision(should_respond=False, reason="muted")

    if quiet_hours_enabled:
        local_now = datetime.fromtimestamp(now_ts, tz)
        if within_quiet_hours(config.quiet_hours_start, config.quiet_hours_end, local_now):
            return ActivationDecision(should_respond=False, reason="quiet_hours")

    texts = [text for text in fragments if isinstance(text, str)]
    match_index, utterance = find_trigger(texts, config.activation_pattern)
    trigger_matched = match_index is not None

    if config.listen_mode == ListenMode.TRIGGER and not trigger_matched:
        return ActivationDecision(should_respond=False, reason="no_trigger")

    if config.listen_mode == ListenMode.FOLLOWUP and not trigger_matched:
        if last_accepted_ts is None:
            return ActivationDecision(should_respond=False, reason="no_trigger")
        elapsed_ms = (now_ts - last_accepted_ts) * 1000.0
        if elapsed_ms > config.followup_window_ms:
            return ActivationDecision(should_respond=False, reason="followup_expired")

    if not utterance:
        start = match_index + 1 if trigger_matched else 0
        utterance = " ".join(text.strip() for text in texts[start:] if text.strip())

    if not utterance:
        return ActivationDecision(should_respond=False, trigger_matched=trigger_matched, reason="empty_utterance")

    if trigger_matched:
        reason = "trigger"
    elif config.listen_mode == ListenMode.FOLLOWUP:
        reason = "followup"
    else:
        reason = "always"
    return ActivationDecision(should_respond=True, utterance=utterance, trigger_matched=trigger_matched, reason=reason)
