from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class TranscriptFragment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "segment_id"))
    text: Optional[str] = ""
    speaker: Optional[str] = None
    speaker_id: Optional[Union[int, str]] = Field(
        default=None,
        validation_alias=AliasChoices("speakerId", "speaker_id"),
    )
    is_user: Optional[bool] = None
    start: Optional[float] = None
    end: Optional[float] = None
    final: Optional[bool] = Field(default=None, validation_alias=AliasChoices("final", "is_final"))
    is_last_segment: Optional[bool] = None
    segment_type: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @property
    def is_end_marker(self) -> bool:
        return bool(self.final or self.is_last_segment or self.segment_type == "end")

    def to_segment(self) -> dict:
        return {
            "id": self.id,
            "text": self.text or "",
            "speaker": self.speaker,
            "speaker_id": self.speaker_id,
            "is_user": self.is_user,
            "start": self.start,
            "end": self.end,
        }


class WebhookRequest(BaseModel):
    session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sessionId", "session_id"),
    )
    fragments: list[TranscriptFragment] = Field(
        default_factory=list,
        validation_alias=AliasChoices("fragments", "segments"),
    )
    device_user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deviceUserId", "uid", "user_id"),
    )
    end: Optional[bool] = Field(default=None, validation_alias=AliasChoices("end", "final", "is_final"))

    @field_validator("session_id", "device_user_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @property
    def texts(self) -> list[str]:
        return [fragment.text for fragment in self.fragments if isinstance(fragment.text, str)]

    @property
    def end_signal(self) -> bool:
        return bool(self.end) or any(fragment.is_end_marker for fragment in self.fragments)

    def segments(self) -> list[dict]:
        return [fragment.to_segment() for fragment in self.fragments]


class WebhookResponse(BaseModel):
    message: Optional[str] = None
    retry_after_seconds: Optional[int] = Field(default=None, serialization_alias="retryAfterSeconds")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class RateLimitStatusResponse(BaseModel):
    user_id: str
    limit: int
    used: int
    remaining: int
    retry_after_seconds: int
    limited: bool


class QueueStatusResponse(BaseModel):
    pending: int
    running: bool
    batch_size: int
    processed: int
    failed: int
    retried: int
    dropped: int
    abandoned: int
