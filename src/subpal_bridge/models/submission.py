"""
Submission models — vote / translation parameters, queue items and history.
"""

import time
import uuid
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator, model_validator,
)

from subpal_bridge.errors import ValidationError

MAX_SUBTITLE_LENGTH = 500


class SubmissionKind(str, Enum):
    VOTE = "vote"
    TRANSLATION = "translation"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


def format_timestamp(value: Union[int, float]) -> str:
    """120 and 120.0 name the same subtitle line."""
    return str(int(value)) if float(value).is_integer() else str(value)


def _check_timestamp(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("timestamp must be a number")
    if value < 0:
        raise ValueError("timestamp must be non-negative")
    return value


def _non_empty(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
    return value


class VoteParams(BaseModel):
    """PROCESS_VOTE payload"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    video_id: str = Field(alias="videoID", validation_alias=AliasChoices("videoID", "videoId", "video_id"))
    timestamp: Union[int, float]
    vote_type: Literal["upvote", "downvote"] = Field(alias="voteType", validation_alias=AliasChoices("voteType", "vote_type"))
    translation_id: Optional[str] = Field(None, alias="translationID", validation_alias=AliasChoices("translationID", "translation_id"))
    original_subtitle: Optional[str] = Field(None, alias="originalSubtitle", validation_alias=AliasChoices("originalSubtitle", "original_subtitle"))

    check_timestamp = field_validator("timestamp", mode="before")(_check_timestamp)
    strip_required = field_validator("video_id", "original_subtitle", mode="before")(_non_empty)

    @property
    def subject(self) -> str:
        return self.video_id

    def dedup_key(self) -> str:
        return f"{self.video_id}_{format_timestamp(self.timestamp)}_{self.translation_id}_{self.vote_type}"

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TranslationParams(BaseModel):
    """SUBMIT_TRANSLATION payload"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    video_id: str = Field(alias="videoId", validation_alias=AliasChoices("videoId", "videoID", "video_id"))
    timestamp: Union[int, float]
    original: str = Field(max_length=MAX_SUBTITLE_LENGTH)
    translation: str = Field(max_length=MAX_SUBTITLE_LENGTH)
    language_code: str = Field(alias="languageCode", validation_alias=AliasChoices("languageCode", "language_code"))
    submission_reason: str = Field(alias="submissionReason", validation_alias=AliasChoices("submissionReason", "submission_reason"))

    check_timestamp = field_validator("timestamp", mode="before")(_check_timestamp)
    strip_required = field_validator(
        "video_id", "original", "translation", "language_code", "submission_reason", mode="before",
    )(_non_empty)

    @model_validator(mode="after")
    def check_differs(self) -> "TranslationParams":
        if self.original == self.translation:
            raise ValueError("translation must differ from the original subtitle")
        return self

    @property
    def subject(self) -> str:
        return self.video_id

    def dedup_key(self) -> str:
        return f"{self.video_id}_{format_timestamp(self.timestamp)}_{self.original}_{self.translation}"

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


SubmissionParams = Union[VoteParams, TranslationParams]

PARAMS_BY_KIND: dict[SubmissionKind, type[BaseModel]] = {
    SubmissionKind.VOTE: VoteParams,
    SubmissionKind.TRANSLATION: TranslationParams,
}


def validate_params(kind: SubmissionKind, data: Any) -> SubmissionParams:
    """Validate raw caller input, raising the bridge's ValidationError on failure."""
    if isinstance(data, PARAMS_BY_KIND[kind]):
        return data  # type: ignore[return-value]
    if not isinstance(data, dict):
        raise ValidationError(f"{kind.value} parameters must be an object")
    try:
        return PARAMS_BY_KIND[kind].model_validate(data)  # type: ignore[return-value]
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or kind.value
        raise ValidationError(
            f"Invalid {kind.value} parameters: {field}: {first.get('msg')}",
            {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        )


def new_item_id() -> str:
    return uuid.uuid4().hex


class QueueItem(BaseModel):
    id: str = Field(default_factory=new_item_id)
    kind: SubmissionKind
    payload: dict[str, Any]
    enqueued_at: float = Field(default_factory=time.time)
    retry_count: int = 0
    status: ItemStatus = ItemStatus.PENDING
    error: Optional[str] = None

    @property
    def subject(self) -> str:
        return str(self.payload.get("videoID") or self.payload.get("videoId") or "")

    @property
    def history_key(self) -> str:
        return f"{self.subject}_{format_timestamp(self.payload.get('timestamp', 0))}"


class HistoryEntry(BaseModel):
    """A decided submission. Used for status lookups, never for redelivery."""
    item_id: str
    kind: SubmissionKind
    subject: str
    timestamp: Union[int, float]
    status: ItemStatus
    payload: dict[str, Any] = {}
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    decided_at: float = Field(default_factory=time.time)

    @property
    def vote_type(self) -> Optional[str]:
        return self.payload.get("voteType")


class QueueStats(BaseModel):
    """Monotonic per-kind counters; snapshots are immutable."""
    model_config = ConfigDict(frozen=True)

    total: int = 0
    duplicates: int = 0
    queued: int = 0
    successes: int = 0
    failures: int = 0
    queue_length: int = 0
    history_count: int = 0
    processing: bool = False
