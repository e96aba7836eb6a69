from __future__ import annotations

import asyncio
import sqlite3
from contextlib import contextmanager

from audit import CommandAuditLog
from fake_portal import consultation_payload, diagnosed_payload
from teleconsult_core.errors import AccessDenied, OperationInProgress, PortalError, ServerError, ValidationError
from teleconsult_core.lifecycle import PrescriptionLifecycleController
from teleconsult_core.models import (
    CompleteConsultation,
    ExecutionContext,
    GeneratePreview,
    InitializeDiagnosis,
    ModifyDiagnosis,
    SavePrescriptionDraft,
    SignAndSend,
)

CTX = ExecutionContext(physician_id="doc-1", request_id="req-1")
SIGN_PATH = "/consultations/C1/prescription/sign-and-send"
PREVIEW_PATH = "/consultations/C1/prescription/generate-preview"


def _run(stack, command, consultation_id="C1"):
    return asyncio.run(stack.controller.execute(CTX, consultation_id, command))


def test_full_prescription_workflow(stack, portal):
    portal.add(consultation_payload("C1"))

    initialized = _run(stack, InitializeDiagnosis())
    assert initialized.status == "succeeded"
    assert initialized.lifecycle == ["planned", "executing", "succeeded"]
    assert initialized.data["proposed_diagnosis"]["possible_diagnoses"] == ["Flu", "Common cold"]
    assert initialized.data["changes_from_ai"] == []
    assert stack.controller.state_for("C1").status == "diagnosis_modification"
    assert portal.bodies_for("PUT", "/consultations/C1/prescription/diagnosis/modify") == [{}]

    modified = _run(stack, ModifyDiagnosis({"clinical_reasoning": "Likely influenza."}, notes="Narrowed"))
    assert modified.status == "succeeded"
    assert modified.data["changes_from_ai"] == ["clinical_reasoning"]
    assert portal.bodies_for("PUT", "/consultations/C1/prescription/diagnosis/modify")[-1] == {
        "clinical_reasoning": "Likely influenza.",
        "modificationNotes": "Narrowed",
    }
    assert modified.data["consultation"]["doctorDiagnosis"]["modificationType"] == "edited"

    drafted = _run(
        stack,
        SavePrescriptionDraft(
            medications=[{"name": "Oseltamivir", "dosage": "75mg", "frequency": "twice daily"}],
            lifestyle_advice=["Rest"],
            follow_up={"required": True, "days": 5},
        ),
    )
    assert drafted.status == "succeeded"
    assert stack.controller.state_for("C1").status == "prescription_draft"
    assert portal.bodies_for("PUT", "/consultations/C1/prescription/draft")[0]["lifestyleAdvice"] == ["Rest"]

    previewed = _run(stack, GeneratePreview())
    assert previewed.status == "succeeded"
    state = stack.controller.state_for("C1")
    assert state.status == "awaiting_review"
    assert state.draft_pdf_url == "https://files.test/C1/draft.pdf"

    signed = _run(stack, SignAndSend(password="correct-horse"))
    assert signed.status == "succeeded"
    state = stack.controller.state_for("C1")
    assert state.status == "sent"
    assert state.signed_pdf_url == "https://files.test/C1/signed.pdf"

    completed = _run(stack, CompleteConsultation())
    assert completed.status == "succeeded"
    assert completed.data["consultation"]["status"] == "completed"
    assert stack.controller.state_for("C1").status == "sent"


def test_wrong_password_leaves_state_then_correct_password_signs(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="review"))

    first = _run(stack, SignAndSend(password="wrong"))

    assert first.status == "failed"
    assert isinstance(first.error, ValidationError)
    assert first.error.message == "Invalid password"
    assert first.lifecycle == ["planned", "executing", "failed"]
    assert stack.controller.state_for("C1").status == "awaiting_review"
    assert stack.controller.state_for("C1").signed_pdf_url is None

    second = _run(stack, SignAndSend(password="correct-horse", mfa_code="654321"))

    assert second.status == "succeeded"
    state = stack.controller.state_for("C1")
    assert state.status in {"signed", "sent"}
    assert state.signed_pdf_url == "https://files.test/C1/signed.pdf"
    assert portal.bodies_for("POST", SIGN_PATH)[-1] == {"password": "correct-horse", "mfaCode": "654321"}


def test_sign_with_empty_diagnosis_is_refused_without_remote_call(stack, portal):
    payload = diagnosed_payload("C1", prescriptionStatus="review")
    payload["doctorDiagnosis"]["possible_diagnoses"] = []
    portal.add(payload)

    outcome = _run(stack, SignAndSend(password="correct-horse"))

    assert outcome.status == "blocked"
    assert isinstance(outcome.error, ValidationError)
    assert outcome.error.detail == {"reason": "empty_diagnosis"}
    assert outcome.lifecycle == ["planned", "blocked"]
    assert portal.calls_to("POST", SIGN_PATH) == 0
    assert stack.controller.state_for("C1").status == "awaiting_review"


def test_preview_succeeds_after_two_server_errors(stack, portal, sleeps):
    portal.add(diagnosed_payload("C1", prescriptionStatus="draft"))
    portal.script("POST", PREVIEW_PATH, (500, {"message": "busy"}), (500, {"message": "busy"}))

    outcome = _run(stack, GeneratePreview())

    assert outcome.status == "succeeded"
    assert outcome.data["attempts"] == 3
    assert sleeps.delays == [1.0, 2.0]
    assert portal.calls_to("POST", PREVIEW_PATH) == 3
    assert stack.controller.state_for("C1").status == "awaiting_review"


def test_preview_failure_after_retries_keeps_state(stack, portal, sleeps):
    portal.add(diagnosed_payload("C1", prescriptionStatus="draft"))
    portal.script("POST", PREVIEW_PATH, *((503, {"message": "down"}) for _ in range(3)))

    outcome = _run(stack, GeneratePreview())

    assert outcome.status == "failed"
    assert isinstance(outcome.error, ServerError)
    assert stack.controller.state_for("C1").status == "prescription_draft"
    entries = stack.audit.list_for_consultation("C1")
    assert entries[0]["status"] == "failed"
    assert entries[0]["attempts"] == 3
    assert entries[0]["error_code"] == "server_error"


def test_completion_requires_signature(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="review"))

    outcome = _run(stack, CompleteConsultation())

    assert outcome.status == "blocked"
    assert outcome.error.detail == {"reason": "prescription_not_signed"}
    assert portal.calls_to("POST", "/consultations/C1/prescription/complete-consultation") == 0


def test_completion_override_is_recorded(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="review"))

    outcome = _run(stack, CompleteConsultation(override_reason="  Patient referred to emergency care  "))

    assert outcome.status == "succeeded"
    assert outcome.data["override_reason"] == "Patient referred to emergency care"
    entry = stack.audit.list_for_consultation("C1")[0]
    assert entry["command"] == "complete_consultation"
    assert entry["override_reason"] == "Patient referred to emergency care"


def test_out_of_order_commands_are_blocked(stack, portal):
    portal.add(consultation_payload("C1"))

    draft = _run(stack, SavePrescriptionDraft(medications=[{"name": "Paracetamol"}]))
    preview = _run(stack, GeneratePreview())

    assert draft.status == "blocked"
    assert draft.error.detail == {"reason": "invalid_transition"}
    assert preview.status == "blocked"
    assert portal.calls_to("PUT", "/consultations/C1/prescription/draft") == 0
    assert stack.controller.state_for("C1").status == "none"


def test_signed_prescription_cannot_be_edited(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="signed"))

    outcome = _run(stack, ModifyDiagnosis({"warning_signs": ["Confusion"]}))

    assert outcome.status == "blocked"
    assert outcome.error.detail == {"reason": "invalid_transition"}


def test_second_initialize_is_refused(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="diagnosis_modification"))

    outcome = _run(stack, InitializeDiagnosis())

    assert outcome.status == "blocked"
    assert outcome.error.detail == {"reason": "diagnosis_exists"}


def test_invalid_patch_is_blocked_before_remote(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="diagnosis_modification"))

    unknown = _run(stack, ModifyDiagnosis({"favourite_colour": "blue"}))
    empty = _run(stack, ModifyDiagnosis({}))

    assert unknown.status == "blocked"
    assert isinstance(unknown.error, ValidationError)
    assert empty.status == "blocked"
    assert portal.calls_to("PUT", "/consultations/C1/prescription/diagnosis/modify") == 0


def test_closed_consultation_refuses_commands(stack, portal):
    portal.add(diagnosed_payload("C1", status="cancelled", prescriptionStatus="diagnosis_modification"))

    outcome = _run(stack, SavePrescriptionDraft())

    assert outcome.status == "blocked"
    assert outcome.error.detail == {"reason": "consultation_closed"}


def test_concurrent_command_on_same_consultation_is_rejected(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="draft"))
    assert stack.in_flight.claim("C1")

    outcome = _run(stack, GeneratePreview())

    assert outcome.status == "blocked"
    assert isinstance(outcome.error, OperationInProgress)
    assert portal.calls == []


def test_unreachable_consultation_fails_without_audit(stack, portal):
    portal.add(consultation_payload("C1"))
    portal.assigned = []
    portal.script("GET", "/consultations/C1", (403, {"message": "Forbidden"}))

    outcome = _run(stack, InitializeDiagnosis())

    assert outcome.status == "failed"
    assert isinstance(outcome.error, AccessDenied)
    assert stack.audit.list_for_consultation("C1") == []


def test_open_workspace_builds_display_values(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="review", prescriptionData={"draftPdfUrl": "u"}))

    outcome = asyncio.run(stack.controller.open_workspace("C1"))

    assert outcome.status == "succeeded"
    data = outcome.data
    assert data["source"] == "direct"
    assert data["has_doctor_diagnosis"] is True
    assert data["prescription"] == {"status": "awaiting_review", "draft_pdf_url": "u", "signed_pdf_url": None}
    assert data["display"]["ai_output"]["possible_diagnoses"] == (
        "Flu - Influenza A (Confidence: 90%)\nCommon cold (Confidence: 35%)"
    )
    assert data["display"]["assessment"] == {"chief_complaint": "Fever", "duration_days": "3"}
    assert data["display"]["doctor_diagnosis"]["possible_diagnoses"] == "Flu\nCommon cold"
    assert "patient_info" not in data


def test_remote_status_without_diagnosis_is_aligned_to_none(stack, portal):
    portal.add(consultation_payload("C1", prescriptionStatus="draft"))

    outcome = asyncio.run(stack.controller.open_workspace("C1"))

    assert outcome.data["prescription"]["status"] == "none"
    assert outcome.data["display"]["doctor_diagnosis"] == {}


class UnavailableAuditDB:
    @contextmanager
    def connection(self):
        raise sqlite3.OperationalError("disk I/O error")
        yield


def test_guards_use_a_fresh_record(stack, portal):
    record = portal.add(diagnosed_payload("C1", prescriptionStatus="draft"))
    assert _run(stack, GeneratePreview()).status == "succeeded"

    record["status"] = "cancelled"
    outcome = _run(stack, ModifyDiagnosis({"clinical_reasoning": "Revisited."}))

    assert outcome.status == "blocked"
    assert outcome.error.detail == {"reason": "consultation_closed"}
    assert portal.calls_to("PUT", "/consultations/C1/prescription/diagnosis/modify") == 0


def test_tracked_state_is_kept_across_a_failed_command(stack, portal):
    portal.add(diagnosed_payload("C1", prescriptionStatus="draft"))
    assert _run(stack, GeneratePreview()).status == "succeeded"
    portal.script("POST", SIGN_PATH, (400, {"message": "Invalid password"}))

    failed = _run(stack, SignAndSend(password="nope"))
    signed = _run(stack, SignAndSend(password="correct-horse"))

    assert failed.status == "failed"
    assert signed.status == "succeeded"
    assert stack.controller.state_for("C1").status == "sent"


def test_tracked_states_are_bounded(stack, portal):
    controller = PrescriptionLifecycleController(gateway=stack.gateway, invoker=stack.invoker, max_tracked=2)
    for consultation_id in ("C1", "C2", "C3"):
        portal.add(diagnosed_payload(consultation_id, prescriptionStatus="draft"))
        asyncio.run(controller.open_workspace(consultation_id))

    assert controller.state_for("C1").status == "none"
    assert controller.state_for("C2").status == "prescription_draft"
    assert controller.state_for("C3").status == "prescription_draft"


def test_unavailable_audit_store_fails_the_command(stack, portal):
    portal.add(consultation_payload("C1"))
    controller = PrescriptionLifecycleController(
        gateway=stack.gateway,
        invoker=stack.invoker,
        audit=CommandAuditLog(UnavailableAuditDB()),
    )

    outcome = asyncio.run(controller.execute(CTX, "C1", InitializeDiagnosis()))
    history = asyncio.run(controller.history("C1"))

    assert outcome.status == "failed"
    assert type(outcome.error) is PortalError
    assert "Audit trail error" in outcome.error.message
    assert outcome.lifecycle == ["planned"]
    assert portal.calls_to("PUT", "/consultations/C1/prescription/diagnosis/modify") == 0
    assert history.data["commands"] == []
    assert "Audit trail error" in history.data["commands_error"]["message"]
