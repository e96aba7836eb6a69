from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Union

from audit.command_log import AuditError, CommandAuditLog
from audit.time_utils import utc_now

from .errors import OperationInProgress, PortalError, ValidationError
from .invoker import InFlightFlags, ResilientActionInvoker
from .models import (
    SIGNED_STATUSES,
    CompleteConsultation,
    ConsultationRecord,
    DoctorDiagnosis,
    ExecutionContext,
    GeneratePreview,
    InitializeDiagnosis,
    ModifyDiagnosis,
    PrescriptionState,
    RemoteCommand,
    SavePrescriptionDraft,
    SignAndSend,
    TransitionResult,
    map_remote_prescription_status,
)
from .normalizer import normalize_sections
from .policy import TransitionPolicy
from .reconciliation import apply_modification, changes_consistent, has_doctor_diagnosis, initialize_from_ai

logger = logging.getLogger(__name__)

Command = Union[
    InitializeDiagnosis,
    ModifyDiagnosis,
    SavePrescriptionDraft,
    GeneratePreview,
    SignAndSend,
    CompleteConsultation,
]


class PrescriptionLifecycleController:
    """Drives one consultation's prescription from diagnosis to completion.

    Remote commands go through the invoker, diagnosis edits through the
    reconciliation engine. The record is read fresh before every command and
    again after every success, so guards and results use the server's copy.
    The only local memory is the prescription state per consultation, kept for
    the most recently used `max_tracked` consultations.
    """

    def __init__(
        self,
        *,
        gateway: Any,
        invoker: ResilientActionInvoker,
        policy: TransitionPolicy | None = None,
        audit: CommandAuditLog | None = None,
        in_flight: InFlightFlags | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_tracked: int = 1024,
    ) -> None:
        self.gateway = gateway
        self.invoker = invoker
        self.policy = policy or TransitionPolicy()
        self.audit = audit
        self.in_flight = in_flight or InFlightFlags()
        self._clock = clock
        self.max_tracked = max(1, max_tracked)
        self._states: OrderedDict[str, PrescriptionState] = OrderedDict()

    def state_for(self, consultation_id: str) -> PrescriptionState:
        return self._states.get(consultation_id, PrescriptionState())

    async def load(self, consultation_id: str):
        lookup = await self.gateway.get_consultation(consultation_id)
        if lookup.ok:
            self._remember(consultation_id, lookup.value)
        return lookup

    async def open_workspace(self, consultation_id: str) -> TransitionResult:
        lookup = await self.load(consultation_id)
        if not lookup.ok:
            return TransitionResult(status="failed", error=lookup.error)
        data = self._workspace_view(consultation_id, lookup.value)
        data["source"] = lookup.source
        workspace = await self.gateway.get_workspace(consultation_id)
        if workspace.ok:
            data["patient_info"] = workspace.value.patient_info
        else:
            logger.info("Prescription workspace not available for %s: %s", consultation_id, workspace.error.code)
        return TransitionResult(status="succeeded", data=data)

    async def history(self, consultation_id: str, limit: int = 50) -> TransitionResult:
        remote = await self.gateway.get_prescription_history(consultation_id)
        data: dict[str, Any] = {
            "remote": [entry.model_dump(mode="json", by_alias=True) for entry in remote.value] if remote.ok else [],
            "commands": [],
        }
        if not remote.ok and remote.error is not None:
            data["remote_error"] = remote.error.as_dict()
        if self.audit is not None:
            try:
                data["commands"] = self.audit.list_for_consultation(consultation_id, limit)
            except AuditError as exc:
                logger.error("Audit trail unreadable for consultation %s: %s", consultation_id, exc)
                data["commands_error"] = PortalError(f"Audit trail error: {exc}").as_dict()
        return TransitionResult(status="succeeded", data=data)

    async def execute(self, ctx: ExecutionContext, consultation_id: str, command: Command) -> TransitionResult:
        with self.in_flight.hold(consultation_id) as claimed:
            if not claimed:
                return TransitionResult(status="blocked", error=OperationInProgress())
            return await self._execute(ctx, consultation_id, command)

    async def _execute(self, ctx: ExecutionContext, consultation_id: str, command: Command) -> TransitionResult:
        lookup = await self.gateway.get_consultation(consultation_id)
        if not lookup.ok:
            return TransitionResult(status="failed", error=lookup.error)
        record = lookup.value
        self._remember(consultation_id, record, self._states.get(consultation_id))
        state = self.state_for(consultation_id)

        body = self._audit_body(command)
        entry_id: str | None = None
        lifecycle = ["planned"]
        try:
            entry_id, lifecycle = self._audit_start(ctx, consultation_id, command, body, state)
            decision = self.policy.evaluate(command, record, state)
            if not decision.allowed:
                logger.info("%s refused for consultation %s: %s", command.name, consultation_id, decision.code)
                return self._blocked(
                    entry_id, lifecycle, ValidationError(decision.message, detail={"reason": decision.code})
                )

            proposed: DoctorDiagnosis | None = None
            if isinstance(command, (InitializeDiagnosis, ModifyDiagnosis)):
                try:
                    proposed, body = self._prepare_diagnosis(ctx, record, command)
                except ValidationError as exc:
                    return self._blocked(entry_id, lifecycle, exc)

            remote = self._remote_command(consultation_id, command, body)
            lifecycle = self._audit_move(entry_id, lifecycle, "executing")
            result = await self.invoker.invoke(remote, in_flight=self.in_flight)
            if not result.ok:
                lifecycle = self._audit_move(
                    entry_id,
                    lifecycle,
                    "failed",
                    attempts=result.attempts,
                    error_code=result.error.code,
                    error_message=result.error.message,
                )
                return TransitionResult(status="failed", error=result.error, lifecycle=lifecycle, action_id=entry_id)

            confirmed = self._confirmed_state(command, state, result.data)
            record = await self._refresh(consultation_id, record, confirmed)
            new_state = self.state_for(consultation_id)
            lifecycle = self._audit_move(
                entry_id,
                lifecycle,
                "succeeded",
                attempts=result.attempts,
                prescription_status=new_state.status,
            )
        except AuditError as exc:
            logger.error("Audit trail rejected %s for consultation %s: %s", command.name, consultation_id, exc)
            return TransitionResult(
                status="failed",
                error=PortalError(f"Audit trail error: {exc}"),
                lifecycle=lifecycle,
                action_id=entry_id,
            )

        data: dict[str, Any] = {
            "command": command.name,
            "attempts": result.attempts,
            "result": result.data,
            "prescription": new_state.as_dict(),
            "consultation": record.model_dump(mode="json", by_alias=True),
        }
        if proposed is not None:
            data["proposed_diagnosis"] = proposed.model_dump(mode="json", by_alias=True)
            data["changes_from_ai"] = sorted(proposed.changes_from_ai)
        if isinstance(command, CompleteConsultation) and command.override_reason and state.status not in SIGNED_STATUSES:
            data["override_reason"] = command.override_reason.strip()
        return TransitionResult(status="succeeded", data=data, lifecycle=lifecycle, action_id=entry_id)

    def _prepare_diagnosis(
        self,
        ctx: ExecutionContext,
        record: ConsultationRecord,
        command: InitializeDiagnosis | ModifyDiagnosis,
    ) -> tuple[DoctorDiagnosis, dict[str, Any]]:
        ai_output = record.ai_agent_output
        now = self._clock()
        if isinstance(command, InitializeDiagnosis):
            return initialize_from_ai(ai_output, ctx.physician_id, now=now), {}

        patch = dict(command.patch or {})
        if command.notes:
            patch["modification_notes"] = command.notes
        if not patch:
            # An empty body asks the server to re-copy the AI output.
            raise ValidationError("A diagnosis modification needs at least one changed field.")
        current = record.doctor_diagnosis or initialize_from_ai(ai_output, ctx.physician_id, now=now)
        proposed = apply_modification(current, patch, ctx.physician_id, baseline=ai_output, now=now)
        body = {key: value for key, value in patch.items() if key not in {"modification_notes", "modificationNotes"}}
        notes = patch.get("modification_notes") or patch.get("modificationNotes")
        if notes:
            body["modificationNotes"] = notes
        return proposed, body

    def _remote_command(self, consultation_id: str, command: Command, body: dict[str, Any]) -> RemoteCommand:
        if isinstance(command, (InitializeDiagnosis, ModifyDiagnosis)):
            return RemoteCommand("modify_diagnosis", consultation_id, body=body)
        if isinstance(command, SignAndSend):
            credential = {"password": command.password}
            if command.mfa_code:
                credential["mfaCode"] = command.mfa_code
            return RemoteCommand(command.name, consultation_id, credential=credential)
        if isinstance(command, SavePrescriptionDraft):
            return RemoteCommand(command.name, consultation_id, body=body)
        return RemoteCommand(command.name, consultation_id)

    def _confirmed_state(self, command: Command, state: PrescriptionState, data: dict[str, Any]) -> PrescriptionState:
        target = self.policy.target_for(command.name)
        reported = map_remote_prescription_status(data.get("prescriptionStatus"))
        if isinstance(command, (InitializeDiagnosis, ModifyDiagnosis)):
            # Edits invalidate any preview generated from the previous diagnosis.
            return PrescriptionState(target, None, None)
        if isinstance(command, SavePrescriptionDraft):
            return PrescriptionState(target, state.draft_pdf_url, None)
        if isinstance(command, GeneratePreview):
            status = reported if reported in {"awaiting_review", "awaiting_signature"} else target
            return PrescriptionState(status, data.get("draftPdfUrl") or state.draft_pdf_url, None)
        if isinstance(command, SignAndSend):
            status = reported if reported in SIGNED_STATUSES else target
            return PrescriptionState(status, state.draft_pdf_url, data.get("signedPdfUrl") or state.signed_pdf_url)
        return state

    async def _refresh(
        self,
        consultation_id: str,
        previous: ConsultationRecord,
        confirmed: PrescriptionState,
    ) -> ConsultationRecord:
        lookup = await self.gateway.get_consultation(consultation_id)
        if not lookup.ok:
            logger.warning(
                "Refresh of consultation %s failed after a confirmed command: %s",
                consultation_id,
                lookup.error.code,
            )
            self._track(consultation_id, confirmed)
            return previous
        self._remember(consultation_id, lookup.value, confirmed)
        return lookup.value

    def _remember(
        self,
        consultation_id: str,
        record: ConsultationRecord,
        confirmed: PrescriptionState | None = None,
    ) -> None:
        if confirmed is not None:
            self._track(consultation_id, confirmed.aligned_with(record))
        else:
            self._track(consultation_id, PrescriptionState.from_record(record, self._states.get(consultation_id)))
        diagnosis = record.doctor_diagnosis
        if diagnosis is not None and record.ai_agent_output is not None:
            if not changes_consistent(record.ai_agent_output, diagnosis):
                logger.warning("changesFromAI reported for %s differs from the re-derived set", consultation_id)

    def _track(self, consultation_id: str, state: PrescriptionState) -> None:
        self._states[consultation_id] = state
        self._states.move_to_end(consultation_id)
        while len(self._states) > self.max_tracked:
            self._states.popitem(last=False)

    def _workspace_view(self, consultation_id: str, record: ConsultationRecord) -> dict[str, Any]:
        diagnosis = record.doctor_diagnosis
        return {
            "consultation": record.model_dump(mode="json", by_alias=True),
            "prescription": self.state_for(consultation_id).as_dict(),
            "has_doctor_diagnosis": has_doctor_diagnosis(record),
            "changes_from_ai": sorted(diagnosis.changes_from_ai) if diagnosis else [],
            "display": {
                "assessment": normalize_sections(record.structured_assessment_input),
                "ai_output": normalize_sections(record.ai_agent_output),
                "doctor_diagnosis": normalize_sections(diagnosis.clinical_values()) if diagnosis else {},
            },
        }

    def _audit_body(self, command: Command) -> dict[str, Any]:
        if isinstance(command, ModifyDiagnosis):
            return {"patch": command.patch, "notes": command.notes}
        if isinstance(command, SavePrescriptionDraft):
            return command.body()
        return {}

    def _audit_start(
        self,
        ctx: ExecutionContext,
        consultation_id: str,
        command: Command,
        body: dict[str, Any],
        state: PrescriptionState,
    ) -> tuple[str | None, list[str]]:
        if self.audit is None:
            return None, ["planned"]
        override = command.override_reason if isinstance(command, CompleteConsultation) else None
        entry = self.audit.start(
            consultation_id=consultation_id,
            physician_id=ctx.physician_id,
            request_id=ctx.request_id,
            command=command.name,
            payload=body,
            prescription_status=state.status,
            override_reason=(override or "").strip() or None,
        )
        return entry.entry_id, entry.lifecycle

    def _audit_move(self, entry_id: str | None, lifecycle: list[str], next_state: str, **details: Any) -> list[str]:
        if self.audit is None or entry_id is None:
            return [*lifecycle, next_state]
        return self.audit.transition(entry_id=entry_id, next_state=next_state, **details)

    def _blocked(self, entry_id: str | None, lifecycle: list[str], error: PortalError) -> TransitionResult:
        lifecycle = self._audit_move(
            entry_id,
            lifecycle,
            "blocked",
            error_code=error.code,
            error_message=error.message,
        )
        return TransitionResult(status="blocked", error=error, lifecycle=lifecycle, action_id=entry_id)
