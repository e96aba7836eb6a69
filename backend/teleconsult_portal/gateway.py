from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError as SchemaValidationError

from teleconsult_core.errors import AccessDenied, PortalError, ValidationError
from teleconsult_core.invoker import PortalRequester
from teleconsult_core.models import ConsultationRecord, PrescriptionHistoryEntry, PrescriptionWorkspace

logger = logging.getLogger(__name__)

NOT_ASSIGNED_MESSAGE = "This consultation is not assigned to you or does not exist."


@dataclass
class Lookup:
    value: Any = None
    error: PortalError | None = None
    source: str = "direct"

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ConsultationPage:
    consultations: list[ConsultationRecord] = field(default_factory=list)
    total: int = 0


def _path_id(consultation_id: str) -> str:
    return quote(consultation_id, safe="")


def _unwrap(payload: Any, key: str) -> Any:
    if isinstance(payload, dict) and isinstance(payload.get(key), dict) and "_id" not in payload:
        return payload[key]
    return payload


class ConsultationGateway:
    """Read side of the consultation API.

    Methods never raise; failures come back as classified errors on the lookup.
    """

    def __init__(self, client: PortalRequester) -> None:
        self._client = client

    async def get_consultation(self, consultation_id: str) -> Lookup:
        try:
            payload = await self._client.request("GET", f"/consultations/{_path_id(consultation_id)}")
        except AccessDenied as exc:
            logger.info(
                "Direct access to consultation %s denied (%s); scanning the physician's list",
                consultation_id,
                exc.status_code,
            )
            return await self._find_in_doctor_list(consultation_id)
        except PortalError as exc:
            return Lookup(error=exc)
        return self._parse_record(_unwrap(payload, "consultation"), source="direct")

    async def list_doctor_consultations(self) -> Lookup:
        try:
            payload = await self._client.request("GET", "/consultations/doctor/me")
        except PortalError as exc:
            return Lookup(error=exc, source="doctor_list")

        if isinstance(payload, dict) and isinstance(payload.get("consultations"), list):
            rows = payload["consultations"]
            total = payload.get("total")
        elif isinstance(payload, list):
            rows = payload
            total = None
        else:
            rows = []
            total = None

        records: list[ConsultationRecord] = []
        for row in rows:
            try:
                records.append(ConsultationRecord.model_validate(row))
            except SchemaValidationError:
                logger.warning("Skipping malformed consultation entry in physician list")
        if not isinstance(total, int) or isinstance(total, bool):
            total = len(records)
        return Lookup(value=ConsultationPage(consultations=records, total=total), source="doctor_list")

    async def get_workspace(self, consultation_id: str) -> Lookup:
        try:
            payload = await self._client.request(
                "GET", f"/consultations/{_path_id(consultation_id)}/prescription/workspace"
            )
        except PortalError as exc:
            return Lookup(error=exc)
        try:
            return Lookup(value=PrescriptionWorkspace.model_validate(payload))
        except SchemaValidationError:
            return Lookup(error=ValidationError("Prescription workspace payload is malformed."))

    async def get_prescription_history(self, consultation_id: str) -> Lookup:
        try:
            payload = await self._client.request(
                "GET", f"/consultations/{_path_id(consultation_id)}/prescription/history"
            )
        except PortalError as exc:
            return Lookup(error=exc)
        rows = payload.get("history") if isinstance(payload, dict) else payload
        entries: list[PrescriptionHistoryEntry] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                entries.append(PrescriptionHistoryEntry.model_validate(row))
            except SchemaValidationError:
                logger.warning("Skipping malformed prescription history entry for %s", consultation_id)
        return Lookup(value=entries)

    async def _find_in_doctor_list(self, consultation_id: str) -> Lookup:
        listing = await self.list_doctor_consultations()
        if isinstance(listing.error, AccessDenied):
            # Keep the status so an expired session still asks for re-authentication.
            return Lookup(
                error=AccessDenied(NOT_ASSIGNED_MESSAGE, status_code=listing.error.status_code),
                source="doctor_list",
            )
        if listing.error is not None:
            return listing
        for record in listing.value.consultations:
            if record.matches(consultation_id):
                logger.info("Consultation %s resolved through the physician's list", consultation_id)
                return Lookup(value=record, source="doctor_list")
        return Lookup(error=AccessDenied(NOT_ASSIGNED_MESSAGE, status_code=403), source="doctor_list")

    def _parse_record(self, payload: Any, *, source: str) -> Lookup:
        try:
            return Lookup(value=ConsultationRecord.model_validate(payload), source=source)
        except SchemaValidationError:
            return Lookup(error=ValidationError("Consultation payload is malformed."), source=source)
