"""Data models for external inference jobs and visualization requests."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobKind(str, Enum):
    BASE_GENERATION = "base_generation"
    FACE_SWAP = "face_swap"


class JobStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class GenerationType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class Job(BaseModel):
    """A prediction owned by the inference provider.

    ``status`` is kept as the provider's raw string so statuses the provider
    adds later are reported instead of rejected.
    """
    id: str
    kind: JobKind = JobKind.BASE_GENERATION
    status: str
    created_at: Optional[datetime] = None
    output: Any = None
    error: Optional[str] = None

    def elapsed_seconds(self, now: datetime) -> Optional[float]:
        if self.created_at is None:
            return None
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds()


class JobHandle(BaseModel):
    id: str
    kind: JobKind
    status: str = JobStatus.STARTING.value


class VisualizationRequest(BaseModel):
    """Start-call payload. Immutable once submitted."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        protected_namespaces=(),
    )

    generation_type: Optional[str] = None
    model_id: Optional[str] = None
    prompt: Optional[str] = None
    enable_face_swap: bool = False
    image_path: Optional[str] = None
    face_swap_target_type: Optional[str] = None
    style: Optional[str] = None
    mood: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    enhance_prompt: bool = False
    background: bool = False
