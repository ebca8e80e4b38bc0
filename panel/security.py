"""Security helpers for the client API."""
from __future__ import annotations

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .approvals import ApprovalService
from .database import Database
from .models import User


class APIKeyAuth:
    """Bearer authentication against the client API keys stored in the panel.

    While account approvals are enabled, keys belonging to accounts that have
    not been approved yet are refused.
    """

    def __init__(self, database: Database, approvals: ApprovalService | None = None):
        self._database = database
        self._approvals = approvals or ApprovalService(database)
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> User:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthenticated.",
                headers={"WWW-Authenticate": "Bearer"},
            )

        user = self._database.authenticate_api_key(credentials.credentials.strip())
        if user is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")

        if not user.approved and self._approvals.is_enabled():
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account awaiting approval")

        return user


__all__ = ["APIKeyAuth"]
