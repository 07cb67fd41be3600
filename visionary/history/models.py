"""Persisted rows: creation history and per-prediction processing metadata.

The column set is declared here and versioned with SCHEMA_VERSION; adding a
column means a migration plus a bump, not runtime introspection.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from visionary.jobs.models import JobKind

# 2: base_model_ref and base_input, the exact submitted base job
SCHEMA_VERSION = 2

PENDING_MEDIA_URL = "pending"


class HistoryStatus(str, Enum):
    PROCESSING = "processing"
    FACE_SWAP_STARTED = "face_swap_started"
    FACE_SWAP_STARTING = "face_swap_starting"
    FACE_SWAP_PROCESSING = "face_swap_processing"
    FACE_SWAP_FAILED = "face_swap_failed"
    COMPLETED = "completed"
    COMPLETED_WITH_ERROR = "completed_with_error"
    FAILED = "failed"
    CANCELED = "canceled"


def prediction_column(kind: JobKind) -> str:
    """Column holding the polling key for a job of ``kind``."""
    if kind == JobKind.FACE_SWAP:
        return "face_swap_prediction_id"
    return "replicate_prediction_id"


def saved_flag_column(kind: JobKind) -> str:
    """Column guarding the one-time save of a job's final result."""
    if kind == JobKind.FACE_SWAP:
        return "face_swap_saved_to_storage"
    return "result_saved_to_storage"


class HistoryRecord(BaseModel):
    model_config = ConfigDict(
        extra="ignore", use_enum_values=True, protected_namespaces=()
    )

    id: Optional[str] = None
    user_id: Optional[str] = None
    original_prompt: Optional[str] = None
    enhanced_prompt: Optional[str] = None
    model_id: Optional[str] = None
    generation_type: Optional[str] = None
    media_type: Optional[str] = None
    base_model_ref: Optional[str] = None
    base_input: Optional[Dict[str, Any]] = None
    status: str = HistoryStatus.PROCESSING.value
    status_message: Optional[str] = None
    progress: int = 0
    media_url: Optional[str] = None
    original_url: Optional[str] = None
    replicate_prediction_id: Optional[str] = None
    face_swap_prediction_id: Optional[str] = None
    face_swap_input_image: Optional[str] = None
    result_saved_to_storage: bool = False
    face_swap_saved_to_storage: bool = False
    face_swap_restarted: bool = False
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    schema_version: int = SCHEMA_VERSION

    # NULL columns read back as their defaults
    @field_validator(
        "status",
        "progress",
        "result_saved_to_storage",
        "face_swap_saved_to_storage",
        "face_swap_restarted",
        "schema_version",
        mode="before",
    )
    @classmethod
    def _null_as_default(cls, value, info):
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @classmethod
    def columns(cls) -> set:
        return set(cls.model_fields)

    def saved_for(self, kind: JobKind) -> bool:
        return bool(getattr(self, saved_flag_column(kind)))

    def has_saved_media(self, kind: JobKind) -> bool:
        """True once the result for ``kind`` is stored and the URL is real."""
        return (
            self.saved_for(kind)
            and bool(self.media_url)
            and self.media_url != PENDING_MEDIA_URL
        )

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ProcessingMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prediction_id: str
    history_id: Optional[str] = None
    cancellation_attempted: bool = False
    created_at: Optional[datetime] = None

    @field_validator("cancellation_attempted", mode="before")
    @classmethod
    def _null_as_false(cls, value):
        return False if value is None else value
