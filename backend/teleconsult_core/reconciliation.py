"""Reconciliation between the AI assessment and the physician's diagnosis.

A doctor diagnosis starts as a copy of the AI output and is then edited field
by field. ``changes_from_ai`` is always recomputed against a fresh copy of the
AI baseline, never accumulated, so a field edited back to its original value
drops out of the set again.
"""

from __future__ import annotations

import copy
import json
from datetime import datetime
from typing import Any

from pydantic import ValidationError as SchemaValidationError

from audit.time_utils import utc_now

from .errors import ValidationError
from .models import (
    CLINICAL_FIELDS,
    MODIFICATION_EDITED,
    MODIFICATION_INITIAL,
    AIAgentOutput,
    ConsultationRecord,
    DoctorDiagnosis,
)

_NOTES_KEYS = {"modification_notes", "modificationNotes"}


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def has_doctor_diagnosis(record: ConsultationRecord) -> bool:
    return record.doctor_diagnosis is not None


def baseline_values(ai_output: AIAgentOutput) -> dict[str, Any]:
    """Clinical field values a fresh copy of the AI output would hold."""
    values = ai_output.model_dump(mode="json", include=set(CLINICAL_FIELDS))
    values["possible_diagnoses"] = [candidate["name"] for candidate in values["possible_diagnoses"]]
    return values


def derive_changes(ai_output: AIAgentOutput, diagnosis: DoctorDiagnosis) -> set[str]:
    baseline = baseline_values(ai_output)
    current = diagnosis.clinical_values()
    return {name for name in CLINICAL_FIELDS if _canonical(current.get(name)) != _canonical(baseline.get(name))}


def changes_consistent(ai_output: AIAgentOutput, diagnosis: DoctorDiagnosis) -> bool:
    return derive_changes(ai_output, diagnosis) == diagnosis.changes_from_ai


def initialize_from_ai(ai_output: AIAgentOutput, physician_id: str, *, now: datetime | None = None) -> DoctorDiagnosis:
    return DoctorDiagnosis(
        **baseline_values(ai_output),
        modified_at=now or utc_now(),
        modified_by=physician_id,
        modification_type=MODIFICATION_INITIAL,
        modification_notes=None,
        changes_from_ai=set(),
    )


def validate_patch(patch: dict[str, Any]) -> None:
    if not isinstance(patch, dict):
        raise ValidationError("Diagnosis patch must be an object.")
    unknown = set(patch) - set(CLINICAL_FIELDS) - _NOTES_KEYS
    if unknown:
        raise ValidationError(f"Unsupported diagnosis fields: {', '.join(sorted(unknown))}")


def apply_modification(
    current: DoctorDiagnosis,
    patch: dict[str, Any],
    physician_id: str,
    *,
    baseline: AIAgentOutput,
    now: datetime | None = None,
) -> DoctorDiagnosis:
    """Apply a partial edit and recompute the diff against the AI baseline.

    Fields absent from ``patch`` are left as they are. An empty patch only
    re-derives ``changes_from_ai`` and refreshes ``modified_at``.
    """
    validate_patch(patch)
    data = current.model_dump()
    for key, value in patch.items():
        if key in _NOTES_KEYS:
            data["modification_notes"] = value
        else:
            data[key] = copy.deepcopy(value)
    data["modified_at"] = now or utc_now()
    data["modified_by"] = physician_id
    if patch:
        data["modification_type"] = MODIFICATION_EDITED

    try:
        updated = DoctorDiagnosis.model_validate(data)
    except SchemaValidationError as exc:
        problems = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise ValidationError("Diagnosis patch has invalid values.", detail=problems) from exc
    return updated.model_copy(update={"changes_from_ai": derive_changes(baseline, updated)})
