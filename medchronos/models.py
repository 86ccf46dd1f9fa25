"""
Pydantic models for the MedChronos AI service: stored entities, the
structured report payload, and HTTP request/response bodies.
"""
import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Entities ---

class Patient(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    age: int
    sex: str
    mrn: Optional[str] = None
    reason_for_imaging: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class Study(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    title: str
    modality: Optional[str] = None
    imaging_datetime: datetime
    series_summary: str = "Processing..."  # derived from image captions, regenerable
    include_codes: bool = False
    created_at: datetime = Field(default_factory=_now)

    @field_validator("imaging_datetime")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # Naive and aware datetimes cannot be ordered together
        return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v


class Image(BaseModel):
    id: str = Field(default_factory=_new_id)
    study_id: str
    storage_ref: str
    slice_index: int = Field(ge=0)
    slice_caption: str = ""
    enhanced_caption: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)

    @property
    def display_caption(self) -> str:
        return self.enhanced_caption or self.slice_caption


class ReportOutput(BaseModel):
    """Structured payload returned by report synthesis.

    Prose fields may embed [CITE:study_id] tokens; `citations` is derived
    from them (cite_1 -> first distinct study id, ...).
    """
    findings: str
    impression: str
    next_steps: str
    citations: dict[str, str] = Field(default_factory=dict)
    icd10_codes: Optional[list[str]] = None
    snomed_codes: Optional[list[str]] = None


class Report(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    output: ReportOutput
    created_at: datetime = Field(default_factory=_now)


class Chat(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    title: str = "New Chat"
    created_at: datetime = Field(default_factory=_now)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    chat_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=_now)


# --- Requests ---

class CreatePatientRequest(BaseModel):
    name: str
    age: int = Field(ge=0, le=150)
    sex: str
    mrn: Optional[str] = None
    reason_for_imaging: Optional[str] = None

    @field_validator("name", "sex")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()


class GenerateReportRequest(BaseModel):
    patient_id: str
    include_codes: bool = False


class ChatTurnIn(BaseModel):
    role: str  # "user", "assistant" or "model"
    text: str


class ChatRequest(BaseModel):
    patient_id: str
    chat_id: Optional[str] = None
    messages: list[ChatTurnIn]

    @field_validator("messages")
    @classmethod
    def ends_with_user_question(cls, v: list[ChatTurnIn]) -> list[ChatTurnIn]:
        if not v:
            raise ValueError("Messages cannot be empty")
        if v[-1].role != "user" or not v[-1].text.strip():
            raise ValueError("Last message must be a non-empty user message")
        return v


# --- Responses ---

class StudyProcessingResponse(BaseModel):
    study: Study
    images: list[Image]
    state: str
    summary_tier: str


class RenderedCitation(BaseModel):
    number: int
    study_id: str
    label: str
    found: bool


class RenderedReportResponse(BaseModel):
    report_id: str
    findings: str
    impression: str
    next_steps: str
    citations: list[RenderedCitation]
