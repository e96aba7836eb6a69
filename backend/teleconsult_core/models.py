from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .errors import PortalError

CLOSED_CONSULTATION_STATUSES = {"completed", "cancelled"}

# Field names compared when computing changes_from_ai, in display order.
CLINICAL_FIELDS = (
    "possible_diagnoses",
    "clinical_reasoning",
    "recommended_investigations",
    "treatment_recommendations",
    "patient_education",
    "warning_signs",
    "confidence_score",
    "processing_notes",
    "disclaimer",
)

MODIFICATION_INITIAL = "initial"
MODIFICATION_EDITED = "edited"

PRESCRIPTION_STATUSES = (
    "none",
    "diagnosis_modification",
    "prescription_draft",
    "awaiting_review",
    "awaiting_signature",
    "signed",
    "sent",
)
SIGNED_STATUSES = {"signed", "sent"}
PRESCRIPTION_TRANSITIONS = {
    "none": {"diagnosis_modification"},
    "diagnosis_modification": {"diagnosis_modification", "prescription_draft"},
    "prescription_draft": {"prescription_draft", "awaiting_review", "diagnosis_modification"},
    "awaiting_review": {"signed", "sent", "diagnosis_modification"},
    "awaiting_signature": {"signed", "sent", "diagnosis_modification"},
    "signed": set(),
    "sent": set(),
}

_REMOTE_PRESCRIPTION_STATUS = {
    "none": "none",
    "pending": "none",
    "not_started": "none",
    "diagnosis_modification": "diagnosis_modification",
    "draft": "prescription_draft",
    "prescription_draft": "prescription_draft",
    "review": "awaiting_review",
    "awaiting_review": "awaiting_review",
    "awaiting_signature": "awaiting_signature",
    "signed": "signed",
    "sent": "sent",
    "completed": "sent",
}


def can_transition(current: str, target: str) -> bool:
    return target in PRESCRIPTION_TRANSITIONS.get(current, set())


def map_remote_prescription_status(value: str | None) -> str | None:
    if not value:
        return None
    return _REMOTE_PRESCRIPTION_STATUS.get(value.strip().lower())


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    return [value]


class PortalModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class PatientReference(PortalModel):
    id: str | None = Field(default=None, alias="_id", validation_alias=AliasChoices("_id", "id"))
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    email: str | None = None
    phone: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PaymentInfo(PortalModel):
    amount: float | None = None
    currency: str | None = None
    payment_status: str | None = Field(default=None, alias="paymentStatus")
    paid_at: str | None = Field(default=None, alias="paidAt")


class DiagnosisCandidate(PortalModel):
    name: str
    confidence_score: float | None = None
    description: str | None = None


class AIAgentOutput(PortalModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    possible_diagnoses: list[DiagnosisCandidate] = Field(default_factory=list)
    clinical_reasoning: Any = ""
    recommended_investigations: list[Any] = Field(default_factory=list)
    treatment_recommendations: Any = None
    patient_education: list[Any] = Field(default_factory=list)
    warning_signs: list[Any] = Field(default_factory=list)
    confidence_score: float | None = None
    processing_notes: Any = None
    disclaimer: Any = None

    @field_validator("possible_diagnoses", mode="before")
    @classmethod
    def _lift_diagnosis_names(cls, value: Any) -> list[Any]:
        return [{"name": item} if isinstance(item, str) else item for item in _as_list(value)]

    @field_validator("recommended_investigations", "patient_education", "warning_signs", mode="before")
    @classmethod
    def _coerce_sequences(cls, value: Any) -> list[Any]:
        return _as_list(value)


class DoctorDiagnosis(PortalModel):
    possible_diagnoses: list[str] = Field(default_factory=list)
    clinical_reasoning: Any = ""
    recommended_investigations: list[Any] = Field(default_factory=list)
    treatment_recommendations: Any = None
    patient_education: list[Any] = Field(default_factory=list)
    warning_signs: list[Any] = Field(default_factory=list)
    confidence_score: float | None = None
    processing_notes: Any = None
    disclaimer: Any = None
    modified_at: datetime | None = Field(default=None, alias="modifiedAt")
    modified_by: str | None = Field(default=None, alias="modifiedBy")
    modification_type: str = Field(default=MODIFICATION_INITIAL, alias="modificationType")
    modification_notes: str | None = Field(default=None, alias="modificationNotes")
    changes_from_ai: set[str] = Field(default_factory=set, alias="changesFromAI")

    @field_validator("possible_diagnoses", mode="before")
    @classmethod
    def _flatten_diagnoses(cls, value: Any) -> list[Any]:
        names: list[Any] = []
        for item in _as_list(value):
            if isinstance(item, dict) and isinstance(item.get("name"), str):
                names.append(item["name"])
            else:
                names.append(item)
        return names

    @field_validator("recommended_investigations", "patient_education", "warning_signs", mode="before")
    @classmethod
    def _coerce_sequences(cls, value: Any) -> list[Any]:
        return _as_list(value)

    @field_validator("modification_type", mode="before")
    @classmethod
    def _normalize_modification_type(cls, value: Any) -> str:
        if value is None or str(value).strip().lower() == MODIFICATION_INITIAL:
            return MODIFICATION_INITIAL
        return MODIFICATION_EDITED

    def clinical_values(self) -> dict[str, Any]:
        return self.model_dump(mode="json", include=set(CLINICAL_FIELDS))


class ConsultationRecord(PortalModel):
    id: str = Field(alias="_id", validation_alias=AliasChoices("_id", "id"))
    consultation_id: str | None = Field(default=None, alias="consultationId")
    patient: PatientReference | None = Field(
        default=None,
        alias="patientId",
        validation_alias=AliasChoices("patientId", "patient"),
    )
    status: str = "pending"
    consultation_type: str | None = Field(default=None, alias="consultationType")
    priority: str | None = None
    payment_info: PaymentInfo | None = Field(default=None, alias="paymentInfo")
    structured_assessment_input: dict[str, Any] | None = Field(default=None, alias="structuredAssessmentInput")
    ai_agent_output: AIAgentOutput | None = Field(default=None, alias="aiAgentOutput")
    doctor_diagnosis: DoctorDiagnosis | None = Field(default=None, alias="doctorDiagnosis")
    prescription_status: str | None = Field(default=None, alias="prescriptionStatus")
    prescription_data: dict[str, Any] | None = Field(default=None, alias="prescriptionData")
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")

    @field_validator("patient", mode="before")
    @classmethod
    def _patient_reference(cls, value: Any) -> Any:
        # The list endpoint returns the bare patient id; the detail endpoint populates it.
        if isinstance(value, str):
            return {"_id": value}
        return value

    def matches(self, consultation_id: str) -> bool:
        return self.id == consultation_id

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_CONSULTATION_STATUSES


class PrescriptionWorkspace(PortalModel):
    consultation_id: str = Field(alias="consultationId")
    structured_assessment_input: Any = Field(default=None, alias="structuredAssessmentInput")
    ai_agent_output: AIAgentOutput | None = Field(default=None, alias="aiAgentOutput")
    doctor_diagnosis: DoctorDiagnosis | None = Field(default=None, alias="doctorDiagnosis")
    prescription_status: str | None = Field(default=None, alias="prescriptionStatus")
    prescription_data: dict[str, Any] | None = Field(default=None, alias="prescriptionData")
    patient_info: dict[str, Any] = Field(default_factory=dict, alias="patientInfo")
    has_doctor_diagnosis: bool = Field(default=False, alias="hasDoctorDiagnosis")


class PrescriptionHistoryEntry(PortalModel):
    action: str
    timestamp: str | None = None
    performed_by: str | None = Field(default=None, alias="performedBy")
    details: Any = None


@dataclass
class PrescriptionState:
    status: str = "none"
    draft_pdf_url: str | None = None
    signed_pdf_url: str | None = None

    @classmethod
    def from_record(cls, record: ConsultationRecord, previous: PrescriptionState | None = None) -> PrescriptionState:
        status = map_remote_prescription_status(record.prescription_status)
        if status is None:
            status = previous.status if previous else "none"
        data = record.prescription_data or {}
        state = cls(
            status=status,
            draft_pdf_url=data.get("draftPdfUrl") or (previous.draft_pdf_url if previous else None),
            signed_pdf_url=data.get("signedPdfUrl") or (previous.signed_pdf_url if previous else None),
        )
        return state.aligned_with(record)

    def aligned_with(self, record: ConsultationRecord) -> PrescriptionState:
        has_diagnosis = record.doctor_diagnosis is not None
        if has_diagnosis and self.status == "none":
            return PrescriptionState("diagnosis_modification", self.draft_pdf_url, self.signed_pdf_url)
        if not has_diagnosis and self.status != "none":
            return PrescriptionState("none", None, None)
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "draft_pdf_url": self.draft_pdf_url,
            "signed_pdf_url": self.signed_pdf_url,
        }


@dataclass(frozen=True)
class ExecutionContext:
    physician_id: str
    request_id: str


@dataclass(frozen=True)
class InitializeDiagnosis:
    name = "initialize_diagnosis"


@dataclass(frozen=True)
class ModifyDiagnosis:
    patch: dict[str, Any]
    notes: str | None = None
    name = "modify_diagnosis"


@dataclass(frozen=True)
class SavePrescriptionDraft:
    medications: list[dict[str, Any]] = field(default_factory=list)
    investigations: list[dict[str, Any]] = field(default_factory=list)
    lifestyle_advice: list[str] = field(default_factory=list)
    follow_up: dict[str, Any] | None = None
    name = "save_draft"

    def body(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "medications": list(self.medications),
            "investigations": list(self.investigations),
            "lifestyleAdvice": list(self.lifestyle_advice),
        }
        if self.follow_up is not None:
            payload["followUp"] = dict(self.follow_up)
        return payload


@dataclass(frozen=True)
class GeneratePreview:
    name = "generate_preview"


@dataclass(frozen=True)
class SignAndSend:
    password: str = field(repr=False)
    mfa_code: str | None = field(default=None, repr=False)
    name = "sign_and_send"


@dataclass(frozen=True)
class CompleteConsultation:
    override_reason: str | None = None
    name = "complete_consultation"


@dataclass
class RemoteCommand:
    name: str
    consultation_id: str
    body: dict[str, Any] | None = None
    credential: dict[str, str] | None = field(default=None, repr=False)

    @property
    def flight_key(self) -> str:
        return f"{self.consultation_id}:{self.name}"


@dataclass
class CommandResult:
    command: str
    data: dict[str, Any] = field(default_factory=dict)
    error: PortalError | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TransitionResult:
    status: str
    data: dict[str, Any] = field(default_factory=dict)
    error: PortalError | None = None
    lifecycle: list[str] = field(default_factory=list)
    action_id: str | None = None

    @property
    def errors(self) -> list[dict[str, Any]]:
        return [self.error.as_dict()] if self.error is not None else []

    def as_envelope(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "data": self.data,
            "errors": self.errors,
            "lifecycle": self.lifecycle,
            "action_id": self.action_id,
        }
