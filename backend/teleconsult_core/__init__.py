from .errors import (
    AccessDenied,
    NetworkError,
    NotFound,
    OperationInProgress,
    PortalError,
    ServerError,
    ValidationError,
    classify_status,
)
from .invoker import InFlightFlags, ResilientActionInvoker
from .lifecycle import PrescriptionLifecycleController
from .models import (
    PRESCRIPTION_STATUSES,
    CompleteConsultation,
    ConsultationRecord,
    DoctorDiagnosis,
    ExecutionContext,
    GeneratePreview,
    InitializeDiagnosis,
    ModifyDiagnosis,
    PrescriptionState,
    SavePrescriptionDraft,
    SignAndSend,
    TransitionResult,
)
from .normalizer import normalize, normalize_sections
from .policy import PolicyDecision, TransitionPolicy
from .registry import CommandDefinition, CommandRegistry, default_registry

__all__ = [
    "PRESCRIPTION_STATUSES",
    "AccessDenied",
    "CommandDefinition",
    "CommandRegistry",
    "CompleteConsultation",
    "ConsultationRecord",
    "DoctorDiagnosis",
    "ExecutionContext",
    "GeneratePreview",
    "InFlightFlags",
    "InitializeDiagnosis",
    "ModifyDiagnosis",
    "NetworkError",
    "NotFound",
    "OperationInProgress",
    "PolicyDecision",
    "PortalError",
    "PrescriptionLifecycleController",
    "PrescriptionState",
    "ResilientActionInvoker",
    "SavePrescriptionDraft",
    "ServerError",
    "SignAndSend",
    "TransitionPolicy",
    "TransitionResult",
    "ValidationError",
    "classify_status",
    "default_registry",
    "normalize",
    "normalize_sections",
]
