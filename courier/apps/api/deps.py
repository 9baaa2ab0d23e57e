from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.config import get_settings
from courier.persistence.db import get_session
from courier.services.queue.dispatcher import DeliveryDispatcher
from courier.services.worker import get_dispatcher


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_queue_dispatcher() -> DeliveryDispatcher:
    return await get_dispatcher()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _not_configured(name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "SERVICE_UNAVAILABLE", "message": f"{name} is not configured"},
    )


def _secret_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    expected = get_settings().admin_api_token
    if not expected:
        raise _not_configured("Admin API token")
    if not _secret_matches(x_admin_token, expected):
        raise _auth_error("Missing or invalid admin token")


async def require_cron(authorization: str | None = Header(default=None)) -> None:
    # Cron providers authenticate with a bearer secret shared out of band.
    expected = get_settings().cron_secret
    if not expected:
        raise _not_configured("Cron secret")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not _secret_matches(token.strip(), expected):
        raise _auth_error("Missing or invalid cron secret")
