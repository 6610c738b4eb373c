"""Bearer-token authentication for the governance API."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from starlette.requests import Request


@dataclass(slots=True)
class AuthResult:
    """Authentication result payload."""

    ok: bool
    identity: str | None = None
    reason: str | None = None


class AuthProvider(ABC):
    """Authentication provider contract."""

    @abstractmethod
    async def authenticate(self, request: Request) -> AuthResult: ...


class BearerTokenAuthProvider(AuthProvider):
    """Resolve ``Authorization: Bearer <token>`` to the owner identity it was issued for."""

    def __init__(self, tokens: dict[str, str]) -> None:
        self._tokens = {
            token.strip(): owner.strip()
            for token, owner in tokens.items()
            if token and token.strip() and owner and owner.strip()
        }

    async def authenticate(self, request: Request) -> AuthResult:
        raw = request.headers.get("Authorization", "")
        if not raw.startswith("Bearer "):
            return AuthResult(ok=False, reason="missing_bearer")
        token = raw[len("Bearer ") :].strip()
        owner = self._tokens.get(token)
        if owner is None:
            return AuthResult(ok=False, reason="invalid_bearer")
        return AuthResult(ok=True, identity=owner)
