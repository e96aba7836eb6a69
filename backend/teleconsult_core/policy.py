from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .models import SIGNED_STATUSES, ConsultationRecord, PrescriptionState, can_transition


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    code: str
    message: str


class TransitionPolicy:
    _TARGETS = {
        "initialize_diagnosis": "diagnosis_modification",
        "modify_diagnosis": "diagnosis_modification",
        "save_draft": "prescription_draft",
        "generate_preview": "awaiting_review",
        "sign_and_send": "signed",
    }
    _LABELS = {
        "initialize_diagnosis": "initialize the diagnosis",
        "modify_diagnosis": "modify the diagnosis",
        "save_draft": "save a prescription draft",
        "generate_preview": "generate a preview",
        "sign_and_send": "sign and send the prescription",
        "complete_consultation": "complete the consultation",
    }

    def target_for(self, command_name: str) -> str | None:
        return self._TARGETS.get(command_name)

    def evaluate(self, command: Any, record: ConsultationRecord, state: PrescriptionState) -> PolicyDecision:
        name = command.name
        if name == "complete_consultation":
            return self._evaluate_completion(command, record, state)

        if name not in self._TARGETS:
            return PolicyDecision(False, "unknown_command", f"Command '{name}' is not supported.")
        if record.is_closed:
            return PolicyDecision(
                False,
                "consultation_closed",
                f"Consultation is {record.status}; the prescription can no longer change.",
            )
        target = self._TARGETS[name]
        if not can_transition(state.status, target):
            return PolicyDecision(
                False,
                "invalid_transition",
                f"Cannot {self._LABELS[name]} while the prescription is {state.status}.",
            )
        if name in {"initialize_diagnosis", "modify_diagnosis"} and record.ai_agent_output is None:
            return PolicyDecision(False, "missing_ai_output", "AI assessment is not available for this consultation.")
        if name == "initialize_diagnosis" and record.doctor_diagnosis is not None:
            return PolicyDecision(False, "diagnosis_exists", "Doctor diagnosis has already been initialized.")
        if name == "sign_and_send":
            diagnosis = record.doctor_diagnosis
            if diagnosis is None or not any(str(item).strip() for item in diagnosis.possible_diagnoses):
                return PolicyDecision(
                    False,
                    "empty_diagnosis",
                    "At least one diagnosis is required before signing the prescription.",
                )
            if not command.password:
                return PolicyDecision(False, "missing_credential", "Password is required to sign prescription.")
        return PolicyDecision(True, "ok", "allowed")

    def _evaluate_completion(self, command: Any, record: ConsultationRecord, state: PrescriptionState) -> PolicyDecision:
        if record.is_closed:
            return PolicyDecision(False, "consultation_closed", f"Consultation is already {record.status}.")
        if state.status in SIGNED_STATUSES:
            return PolicyDecision(True, "ok", "allowed")
        override = (command.override_reason or "").strip()
        if override:
            return PolicyDecision(True, "operator_override", f"Completed without a signed prescription: {override}")
        return PolicyDecision(
            False,
            "prescription_not_signed",
            "The prescription must be signed before the consultation can be completed.",
        )
