from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class SlipStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    VALIDATED = "validated"
    FAILED = "failed"


class SlipSource(str, Enum):
    POS = "pos"
    WEBSITE = "website"


class ConcernCode(str, Enum):
    NOT_A_SLIP = "NOT_A_SLIP"
    REFERENCE_MISMATCH = "REFERENCE_MISMATCH"
    REFERENCE_UNCHECKED = "REFERENCE_UNCHECKED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    AMOUNT_UNDETERMINED = "AMOUNT_UNDETERMINED"


# --- Review events (append-only trail) ---


class _ReviewEventBase(BaseModel):
    at: Optional[datetime] = None
    actor_id: Optional[str] = None


class ManualReviewRequested(_ReviewEventBase):
    type: Literal["manual_review_requested"] = "manual_review_requested"
    note: Optional[str] = Field(default=None, max_length=1000)


class ContinuedOverride(_ReviewEventBase):
    type: Literal["continued_override"] = "continued_override"
    note: Optional[str] = Field(default=None, max_length=1000)


class OcrError(_ReviewEventBase):
    type: Literal["ocr_error"] = "ocr_error"
    message: str = Field(..., min_length=1, max_length=2000)


class StatusChanged(_ReviewEventBase):
    type: Literal["status_changed"] = "status_changed"
    from_status: str
    to_status: str


ReviewEvent = Annotated[
    Union[ManualReviewRequested, ContinuedOverride, OcrError, StatusChanged],
    Field(discriminator="type"),
]
# OCR errors reach staff PATCHes only through the legacy "error" flag.
StaffReviewEvent = Annotated[
    Union[ManualReviewRequested, ContinuedOverride],
    Field(discriminator="type"),
]


# --- Verdict ---


class Concern(BaseModel):
    code: ConcernCode
    severity: Literal["warning", "blocking", "info"]
    blocking: bool
    message: str


class SlipVerdictOut(BaseModel):
    is_slip: bool
    match: Optional[bool] = None
    amount_match: Optional[bool] = None
    confidence: Optional[float] = None
    extracted_text: str = ""
    detected_reference: Optional[str] = None
    detected_amount: Optional[float] = None
    expected_amount: Optional[float] = None
    reference_distance: Optional[int] = None
    classifier_rule: str
    concerns: list[Concern] = Field(default_factory=list)
    slip_id: Optional[str] = None


class PublicValidateRequest(BaseModel):
    slip: str = Field(..., min_length=1, description="data:<mime>;base64,<payload>")
    reference: str = Field(..., min_length=1, max_length=128)
    expected_amount: Optional[str] = Field(default=None, max_length=64)
    persist: bool = True


# --- Slip records ---


class SlipCreateResponse(BaseModel):
    id: str
    status: SlipStatus
    file_url: Optional[str] = None


class SlipSummaryOut(BaseModel):
    id: str
    filename: Optional[str] = None
    file_url: Optional[str] = None
    source: SlipSource
    uploaded_by: Optional[str] = None
    uploaded_by_name: Optional[str] = None
    status: SlipStatus
    created_at: Optional[datetime] = None


class SlipOut(SlipSummaryOut):
    is_final: bool
    ocr_text: str = ""
    ocr_confidence: Optional[float] = None
    entered_reference: Optional[str] = None
    expected_amount: Optional[float] = None
    detected_amount: Optional[float] = None
    detected_reference: Optional[str] = None
    match: Optional[bool] = None
    amount_match: Optional[bool] = None
    validation_result: dict[str, Any] = Field(default_factory=dict)
    review_events: list[ReviewEvent] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class SlipListResponse(BaseModel):
    items: list[SlipSummaryOut]
    total: int
    page: int
    per_page: int


class SlipUpdateRequest(BaseModel):
    status: Optional[SlipStatus] = None
    events: list[StaffReviewEvent] = Field(default_factory=list)
    validation_result: Optional[dict[str, Any]] = None
