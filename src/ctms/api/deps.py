"""API dependencies."""

import logging
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ctms.auth.context import AuthContext
from ctms.auth.token import InvalidToken, decode_access_token
from ctms.config import Environment, settings
from ctms.db import base as db_base
from ctms.db.repositories import UserRepository
from ctms.engine.core import CTMSEngine
from ctms.models import Actor
from ctms.realtime.broadcaster import EventPublisher, connection_manager
from ctms.tasks.side_effects import SideEffectQueue, get_side_effect_queue

logger = logging.getLogger("ctms.api")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with db_base.async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_publisher() -> EventPublisher:
    return connection_manager


def get_side_effects() -> SideEffectQueue:
    return get_side_effect_queue()


def insecure_dev_enabled() -> bool:
    return settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT


async def resolve_user_actor(session: AsyncSession, user_id: UUID) -> Actor:
    """Load the live user behind an identity and turn it into an Actor."""
    user = await UserRepository(session).get(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="User account is inactive")
    return user.to_actor()


async def get_auth_context(
    authorization: str | None = Header(None),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    session: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    """
    Resolve the caller.

    Bearer JWT always works. The X-User-ID header is honoured only in
    insecure development mode.
    """
    if authorization and authorization.startswith("Bearer "):
        try:
            user_id = decode_access_token(authorization[7:])
        except InvalidToken as e:
            raise HTTPException(status_code=401, detail=str(e))
        return AuthContext(actor=await resolve_user_actor(session, user_id), auth_type="jwt")

    if x_user_id and insecure_dev_enabled():
        try:
            user_id = UUID(x_user_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid user ID format")
        return AuthContext(
            actor=await resolve_user_actor(session, user_id),
            auth_type="insecure_dev",
        )

    raise HTTPException(
        status_code=401,
        detail="Missing authorization. Use Authorization: Bearer <token>",
    )


async def get_current_actor(auth: AuthContext = Depends(get_auth_context)) -> Actor:
    return auth.actor


async def get_engine(
    session: AsyncSession = Depends(get_db_session),
    publisher: EventPublisher = Depends(get_publisher),
    side_effects: SideEffectQueue = Depends(get_side_effects),
) -> CTMSEngine:
    return CTMSEngine(session, publisher, side_effects)


def get_client_ip(request: Request) -> Optional[str]:
    """Caller address for audit records, honouring X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def validate_auth_config() -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.allow_insecure_dev and settings.env != Environment.DEVELOPMENT:
        raise RuntimeError(
            f"SECURITY ERROR: allow_insecure_dev=true is only permitted in development. "
            f"Current environment: {settings.env.value}. "
            f"Set CTMS_ALLOW_INSECURE_DEV=false for {settings.env.value}."
        )

    if settings.allow_insecure_dev:
        logger.warning(
            "=" * 80 + "\n"
            "WARNING: Running in INSECURE DEV MODE\n"
            "  - X-User-ID header is accepted in place of a bearer token\n"
            "  - Set CTMS_ALLOW_INSECURE_DEV=false for any deployment\n"
            + "=" * 80
        )
    else:
        logger.info(f"Authentication enabled: bearer JWT ({settings.jwt_algorithm}) for {settings.env.value}")
