from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Protocol

from .errors import OperationInProgress, PortalError, ServerError, ValidationError
from .models import CommandResult, RemoteCommand
from .registry import CommandDefinition, CommandRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class PortalRequester(Protocol):
    async def request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> Any: ...


class InFlightFlags:
    """Caller-owned markers for operations that are still awaiting the remote."""

    def __init__(self) -> None:
        self._keys: set[str] = set()

    def is_set(self, key: str) -> bool:
        return key in self._keys

    def claim(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def release(self, key: str) -> None:
        self._keys.discard(key)

    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        claimed = self.claim(key)
        try:
            yield claimed
        finally:
            if claimed:
                self.release(key)


class ResilientActionInvoker:
    def __init__(
        self,
        *,
        client: PortalRequester,
        registry: CommandRegistry,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.registry = registry
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def invoke(self, command: RemoteCommand, *, in_flight: InFlightFlags) -> CommandResult:
        try:
            definition = self.registry.resolve(command.name)
        except KeyError as exc:
            return CommandResult(command.name, error=ValidationError(str(exc)))

        if not in_flight.claim(command.flight_key):
            logger.info("Duplicate %s for consultation %s ignored", definition.name, command.consultation_id)
            return CommandResult(definition.name, error=OperationInProgress())
        try:
            payload = None if command.body is None else dict(command.body)
            if definition.requires_credential:
                credential = command.credential or {}
                if not credential.get("password"):
                    return CommandResult(
                        definition.name,
                        error=ValidationError("Password is required to sign prescription."),
                    )
                payload = {**(payload or {}), **credential}
            return await self._run(definition, command.consultation_id, payload)
        finally:
            in_flight.release(command.flight_key)

    async def _run(
        self,
        definition: CommandDefinition,
        consultation_id: str,
        payload: dict[str, Any] | None,
    ) -> CommandResult:
        path = definition.path_for(consultation_id)
        last_error: PortalError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                data = await self.client.request(definition.method, path, json=payload)
            except PortalError as exc:
                last_error = exc
                if not exc.retryable or attempt >= self.max_attempts:
                    logger.warning(
                        "%s for consultation %s failed after %d attempt(s): %s",
                        definition.name,
                        consultation_id,
                        attempt,
                        exc.code,
                    )
                    return CommandResult(definition.name, error=exc, attempts=attempt)
                delay = self.backoff_seconds * attempt
                logger.warning(
                    "%s for consultation %s failed (attempt %d/%d, %s), retrying in %.1fs",
                    definition.name,
                    consultation_id,
                    attempt,
                    self.max_attempts,
                    exc.code,
                    delay,
                )
                await self._sleep(delay)
                continue
            result_data = data if isinstance(data, dict) else {"result": data}
            return CommandResult(definition.name, data=result_data, attempts=attempt)
        return CommandResult(definition.name, error=last_error or ServerError(), attempts=self.max_attempts)
