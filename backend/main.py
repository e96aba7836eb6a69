from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from audit import CommandAuditLog, SQLiteAuditDB
from teleconsult_core import (
    CompleteConsultation,
    ExecutionContext,
    GeneratePreview,
    InFlightFlags,
    InitializeDiagnosis,
    ModifyDiagnosis,
    PortalError,
    PrescriptionLifecycleController,
    ResilientActionInvoker,
    SavePrescriptionDraft,
    SignAndSend,
    TransitionPolicy,
    TransitionResult,
    default_registry,
)
from teleconsult_portal import (
    ConsultationGateway,
    PortalClient,
    PortalSettings,
    RequestScopedSession,
    bootstrap_local_env,
)

bootstrap_local_env()
settings = PortalSettings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("teleconsult")


class ModifyDiagnosisRequest(BaseModel):
    patch: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None


class DraftRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    medications: list[dict[str, Any]] = Field(default_factory=list)
    investigations: list[dict[str, Any]] = Field(default_factory=list)
    lifestyle_advice: list[str] = Field(default_factory=list, alias="lifestyleAdvice")
    follow_up: dict[str, Any] | None = Field(default=None, alias="followUp")


class SignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    password: str = ""
    mfa_code: str | None = Field(default=None, alias="mfaCode")


class CompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    override_reason: str | None = Field(default=None, alias="overrideReason")


class TeleconsultApp:
    def __init__(
        self,
        app_settings: PortalSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = app_settings
        self.session = RequestScopedSession()
        self.client = PortalClient(app_settings, self.session, transport=transport)
        self.gateway = ConsultationGateway(self.client)
        self.in_flight = InFlightFlags()
        self.invoker = ResilientActionInvoker(
            client=self.client,
            registry=default_registry(),
            max_attempts=app_settings.max_attempts,
            backoff_seconds=app_settings.backoff_seconds,
            sleep=sleep,
        )
        self.db = SQLiteAuditDB(app_settings.audit_db_path)
        self.audit = CommandAuditLog(self.db)
        self.controller = PrescriptionLifecycleController(
            gateway=self.gateway,
            invoker=self.invoker,
            policy=TransitionPolicy(),
            audit=self.audit,
            in_flight=self.in_flight,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


container = TeleconsultApp(settings)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await container.aclose()


app = FastAPI(title="Teleconsult Prescription Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_PHYSICIAN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")

_HTTP_STATUS_BY_CODE = {
    "access_denied": 403,
    "not_found": 404,
    "validation_error": 400,
    "operation_in_progress": 409,
    "server_error": 502,
    "network_error": 504,
}


def get_bearer_token(auth_header: str | None) -> str:
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization")
    raw = auth_header.replace("Bearer", "", 1).strip()
    if not raw:
        raise HTTPException(status_code=401, detail="Missing Authorization")
    return raw


def _validated_physician_id(x_physician_id: str) -> str:
    candidate = x_physician_id.strip()
    if not candidate or not _TRUSTED_PHYSICIAN_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-Physician-Id")
    return candidate


def resolve_physician_id(token: str, x_physician_id: str | None) -> str:
    if x_physician_id is not None:
        return _validated_physician_id(x_physician_id)
    # The token is a live credential for the remote API; only a digest of it may identify the caller.
    return f"token_{hashlib.sha256(token.encode('utf-8')).hexdigest()[:24]}"


def _build_ctx(physician_id: str) -> ExecutionContext:
    return ExecutionContext(physician_id=physician_id, request_id=uuid.uuid4().hex)


def _http_status(error: PortalError) -> int:
    if error.code == "access_denied" and getattr(error, "reauthenticate", False):
        return 401
    return _HTTP_STATUS_BY_CODE.get(error.code, 500)


def _raise_for_error(error: PortalError) -> None:
    raise HTTPException(status_code=_http_status(error), detail=error.as_dict())


def _respond(outcome: TransitionResult) -> JSONResponse:
    status_code = 200 if outcome.error is None else _http_status(outcome.error)
    return JSONResponse(status_code=status_code, content=outcome.as_envelope())


async def _run_command(
    consultation_id: str,
    command: Any,
    authorization: str | None,
    x_physician_id: str | None,
) -> JSONResponse:
    token = get_bearer_token(authorization)
    ctx = _build_ctx(resolve_physician_id(token, x_physician_id))
    with container.session.bind(token):
        outcome = await container.controller.execute(ctx, consultation_id, command)
    logger.info(
        "%s on consultation %s by %s: %s",
        command.name,
        consultation_id,
        ctx.physician_id,
        outcome.status,
    )
    return _respond(outcome)


@app.get("/consultations/{consultation_id}")
async def get_consultation(consultation_id: str, authorization: str | None = Header(default=None)):
    token = get_bearer_token(authorization)
    with container.session.bind(token):
        lookup = await container.gateway.get_consultation(consultation_id)
    if not lookup.ok:
        _raise_for_error(lookup.error)
    return {
        "consultation": lookup.value.model_dump(mode="json", by_alias=True),
        "source": lookup.source,
    }


@app.get("/consultations/{consultation_id}/workspace")
async def get_workspace(consultation_id: str, authorization: str | None = Header(default=None)):
    token = get_bearer_token(authorization)
    with container.session.bind(token):
        outcome = await container.controller.open_workspace(consultation_id)
    if outcome.error is not None:
        _raise_for_error(outcome.error)
    return outcome.data


@app.post("/consultations/{consultation_id}/diagnosis/initialize")
async def initialize_diagnosis(
    consultation_id: str,
    authorization: str | None = Header(default=None),
    x_physician_id: str | None = Header(default=None),
):
    return await _run_command(consultation_id, InitializeDiagnosis(), authorization, x_physician_id)


@app.put("/consultations/{consultation_id}/diagnosis")
async def modify_diagnosis(
    consultation_id: str,
    payload: ModifyDiagnosisRequest,
    authorization: str | None = Header(default=None),
    x_physician_id: str | None = Header(default=None),
):
    command = ModifyDiagnosis(patch=payload.patch, notes=payload.notes)
    return await _run_command(consultation_id, command, authorization, x_physician_id)


@app.put("/consultations/{consultation_id}/prescription/draft")
async def save_draft(
    consultation_id: str,
    payload: DraftRequest,
    authorization: str | None = Header(default=None),
    x_physician_id: str | None = Header(default=None),
):
    command = SavePrescriptionDraft(
        medications=payload.medications,
        investigations=payload.investigations,
        lifestyle_advice=payload.lifestyle_advice,
        follow_up=payload.follow_up,
    )
    return await _run_command(consultation_id, command, authorization, x_physician_id)


@app.post("/consultations/{consultation_id}/prescription/preview")
async def generate_preview(
    consultation_id: str,
    authorization: str | None = Header(default=None),
    x_physician_id: str | None = Header(default=None),
):
    return await _run_command(consultation_id, GeneratePreview(), authorization, x_physician_id)


@app.post("/consultations/{consultation_id}/prescription/sign")
async def sign_and_send(
    consultation_id: str,
    payload: SignRequest,
    authorization: str | None = Header(default=None),
    x_physician_id: str | None = Header(default=None),
):
    command = SignAndSend(password=payload.password, mfa_code=payload.mfa_code)
    return await _run_command(consultation_id, command, authorization, x_physician_id)


@app.post("/consultations/{consultation_id}/complete")
async def complete_consultation(
    consultation_id: str,
    payload: CompleteRequest | None = None,
    authorization: str | None = Header(default=None),
    x_physician_id: str | None = Header(default=None),
):
    command = CompleteConsultation(override_reason=payload.override_reason if payload else None)
    return await _run_command(consultation_id, command, authorization, x_physician_id)


@app.get("/consultations/{consultation_id}/audit")
async def get_audit(
    consultation_id: str,
    limit: int = Query(50, ge=1, le=200),
    authorization: str | None = Header(default=None),
):
    token = get_bearer_token(authorization)
    with container.session.bind(token):
        outcome = await container.controller.history(consultation_id, limit=limit)
    return outcome.data
