from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fake_portal import ai_output_payload
from teleconsult_core.errors import ValidationError
from teleconsult_core.models import CLINICAL_FIELDS, AIAgentOutput, ConsultationRecord
from teleconsult_core.reconciliation import (
    apply_modification,
    baseline_values,
    changes_consistent,
    derive_changes,
    has_doctor_diagnosis,
    initialize_from_ai,
)

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _flu_output() -> AIAgentOutput:
    return AIAgentOutput.model_validate(
        {"possible_diagnoses": [{"name": "Flu", "confidence_score": 0.9}], "confidence_score": 0.9}
    )


def test_initialize_copies_ai_output_with_empty_diff():
    diagnosis = initialize_from_ai(_flu_output(), "doc-1", now=FIXED_NOW)

    assert diagnosis.possible_diagnoses == ["Flu"]
    assert diagnosis.confidence_score == 0.9
    assert diagnosis.modification_type == "initial"
    assert diagnosis.changes_from_ai == set()
    assert diagnosis.modified_by == "doc-1"
    assert diagnosis.modified_at == FIXED_NOW


def test_single_field_edit_is_tracked():
    ai_output = _flu_output()
    initial = initialize_from_ai(ai_output, "doc-1", now=FIXED_NOW)

    edited = apply_modification(
        initial, {"clinical_reasoning": "revised text"}, "doc-1", baseline=ai_output, now=FIXED_NOW
    )

    assert edited.changes_from_ai == {"clinical_reasoning"}
    assert edited.clinical_reasoning == "revised text"
    assert edited.modification_type == "edited"
    before = initial.clinical_values()
    after = edited.clinical_values()
    for name in CLINICAL_FIELDS:
        if name != "clinical_reasoning":
            assert after[name] == before[name]


def test_reverting_a_field_drops_it_from_the_diff():
    ai_output = AIAgentOutput.model_validate(ai_output_payload())
    initial = initialize_from_ai(ai_output, "doc-1")
    edited = apply_modification(
        initial,
        {"warning_signs": ["Chest pain"], "clinical_reasoning": "Viral syndrome."},
        "doc-1",
        baseline=ai_output,
    )
    assert edited.changes_from_ai == {"warning_signs", "clinical_reasoning"}

    reverted = apply_modification(
        edited, {"warning_signs": ["Shortness of breath"]}, "doc-2", baseline=ai_output
    )

    assert reverted.changes_from_ai == {"clinical_reasoning"}
    assert reverted.modified_by == "doc-2"


def test_same_patch_twice_is_idempotent():
    ai_output = AIAgentOutput.model_validate(ai_output_payload())
    initial = initialize_from_ai(ai_output, "doc-1", now=FIXED_NOW)
    patch = {"possible_diagnoses": ["Flu", "Sinusitis"], "modification_notes": "Added sinusitis"}

    once = apply_modification(initial, patch, "doc-1", baseline=ai_output, now=FIXED_NOW)
    twice = apply_modification(once, patch, "doc-1", baseline=ai_output, now=FIXED_NOW)

    assert once == twice
    assert twice.changes_from_ai == {"possible_diagnoses"}
    assert twice.modification_notes == "Added sinusitis"


def test_empty_patch_only_rederives():
    ai_output = AIAgentOutput.model_validate(ai_output_payload())
    initial = initialize_from_ai(ai_output, "doc-1", now=FIXED_NOW)

    result = apply_modification(initial, {}, "doc-1", baseline=ai_output)

    assert result.modification_type == "initial"
    assert result.changes_from_ai == set()
    assert result.clinical_values() == initial.clinical_values()


def test_unknown_field_is_rejected():
    ai_output = _flu_output()
    initial = initialize_from_ai(ai_output, "doc-1")

    with pytest.raises(ValidationError) as exc_info:
        apply_modification(initial, {"favourite_colour": "blue"}, "doc-1", baseline=ai_output)
    assert "favourite_colour" in exc_info.value.message


def test_wrongly_typed_value_is_rejected_with_details():
    ai_output = _flu_output()
    initial = initialize_from_ai(ai_output, "doc-1")

    with pytest.raises(ValidationError) as exc_info:
        apply_modification(initial, {"confidence_score": "very sure"}, "doc-1", baseline=ai_output)
    assert any("confidence_score" in problem for problem in exc_info.value.detail)


def test_patch_values_are_copied_not_shared():
    ai_output = AIAgentOutput.model_validate(ai_output_payload())
    initial = initialize_from_ai(ai_output, "doc-1")
    treatment = {"primary_treatment": "Oseltamivir"}

    edited = apply_modification(initial, {"treatment_recommendations": treatment}, "doc-1", baseline=ai_output)
    treatment["primary_treatment"] = "changed afterwards"

    assert edited.treatment_recommendations == {"primary_treatment": "Oseltamivir"}


def test_ai_output_is_never_mutated():
    ai_output = AIAgentOutput.model_validate(ai_output_payload())
    snapshot = ai_output.model_dump()
    initial = initialize_from_ai(ai_output, "doc-1")
    edited = apply_modification(
        initial, {"recommended_investigations": ["Chest X-ray"]}, "doc-1", baseline=ai_output
    )
    edited.recommended_investigations.append("Blood culture")

    assert ai_output.model_dump() == snapshot
    assert baseline_values(ai_output)["recommended_investigations"] == ["CBC", "Rapid influenza test"]


def test_reported_changes_are_checked_against_derived_set():
    ai_output = AIAgentOutput.model_validate(ai_output_payload())
    diagnosis = initialize_from_ai(ai_output, "doc-1").model_copy(
        update={"clinical_reasoning": "Different", "changes_from_ai": {"warning_signs"}}
    )

    assert derive_changes(ai_output, diagnosis) == {"clinical_reasoning"}
    assert not changes_consistent(ai_output, diagnosis)


def test_has_doctor_diagnosis_follows_presence():
    record = ConsultationRecord.model_validate({"_id": "C1", "aiAgentOutput": ai_output_payload()})
    assert not has_doctor_diagnosis(record)

    record = ConsultationRecord.model_validate(
        {"_id": "C1", "doctorDiagnosis": {"possible_diagnoses": [{"name": "Flu"}]}}
    )
    assert has_doctor_diagnosis(record)
    assert record.doctor_diagnosis.possible_diagnoses == ["Flu"]
