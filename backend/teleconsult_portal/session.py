from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Protocol


class SessionCredentials(Protocol):
    def bearer_token(self) -> str | None: ...


class StaticSession:
    """Bearer credential handed over by the external auth service for one process."""

    def __init__(self, token: str | None = None) -> None:
        self._token: str | None = None
        if token:
            self.open(token)

    def open(self, token: str) -> None:
        self._token = token.strip() or None

    def bearer_token(self) -> str | None:
        return self._token


class RequestScopedSession:
    """Session whose credential is bound per request task."""

    def __init__(self) -> None:
        self._token: ContextVar[str | None] = ContextVar("teleconsult_bearer_token", default=None)

    @contextmanager
    def bind(self, token: str | None) -> Iterator[None]:
        reset = self._token.set(token)
        try:
            yield
        finally:
            self._token.reset(reset)

    def bearer_token(self) -> str | None:
        return self._token.get()
