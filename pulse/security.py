"""Scoped bearer tokens for the pulse API.

Read tokens may inspect namespaces and scheduler state. Operator tokens may
also issue credentials and reset a halted scheduler.
"""
from __future__ import annotations

import logging
import os
import secrets
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("pulse.security")

SCOPE_READ = "read"
SCOPE_OPERATOR = "operator"

OPERATOR_TOKENS_ENV = "PULSE_API_TOKENS"
READ_TOKENS_ENV = "PULSE_READ_TOKENS"


def load_tokens(configured: Iterable[str] = (), *, env_var: str = OPERATOR_TOKENS_ENV) -> List[str]:
    """Merge tokens from the configuration file with a comma separated env var."""

    raw = os.getenv(env_var, "")
    tokens = [token.strip() for token in configured if token.strip()]
    tokens.extend(token.strip() for token in raw.split(",") if token.strip())
    return tokens


class ApiAuth:
    """Maps bearer tokens to a scope and builds per-scope FastAPI dependencies."""

    def __init__(self, operator_tokens: Iterable[str], read_tokens: Iterable[str] = ()):
        scopes: Dict[str, str] = {}
        for token in read_tokens:
            if token.strip():
                scopes[token.strip()] = SCOPE_READ
        for token in operator_tokens:
            if token.strip():
                scopes[token.strip()] = SCOPE_OPERATOR
        if not scopes:
            raise ValueError("At least one API token must be provided")
        self._scopes = scopes
        self._bearer = HTTPBearer(auto_error=False)

    @classmethod
    def load(cls, operator_tokens: Iterable[str] = (), read_tokens: Iterable[str] = ()) -> Optional["ApiAuth"]:
        """Build from configured tokens plus the environment, or ``None`` if there are none."""

        operators = load_tokens(operator_tokens, env_var=OPERATOR_TOKENS_ENV)
        readers = load_tokens(read_tokens, env_var=READ_TOKENS_ENV)
        if not operators and not readers:
            return None
        return cls(operators, readers)

    def scope_of(self, provided: str) -> Optional[str]:
        granted: Optional[str] = None
        candidate = provided.encode()
        for token, scope in self._scopes.items():
            if secrets.compare_digest(candidate, token.encode()):
                granted = scope
        return granted

    def require(self, scope: str) -> Callable[[Request], Awaitable[str]]:
        if scope not in (SCOPE_READ, SCOPE_OPERATOR):
            raise ValueError(f"Unknown scope {scope!r}")

        async def dependency(request: Request) -> str:
            credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
            if credentials is None or credentials.scheme.lower() != "bearer":
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

            granted = self.scope_of(credentials.credentials)
            if granted is None:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API token")
            if scope == SCOPE_OPERATOR and granted != SCOPE_OPERATOR:
                logger.warning("Read-only token used for %s %s", request.method, request.url.path)
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator token required")
            return granted

        return dependency


__all__ = ["ApiAuth", "SCOPE_OPERATOR", "SCOPE_READ", "load_tokens"]
