"""Principal authentication for Clerk and local-token auth modes."""

from __future__ import annotations

from dataclasses import dataclass
from hmac import compare_digest
from typing import TYPE_CHECKING

import httpx
from clerk_backend_api import Clerk
from clerk_backend_api.models.clerkerrors import ClerkErrors
from clerk_backend_api.models.sdkerror import SDKError
from clerk_backend_api.security.types import AuthenticateRequestOptions, AuthStatus, RequestState
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from incidentdesk.core.auth_mode import AuthMode
from incidentdesk.core.config import settings
from incidentdesk.core.logging import get_logger
from incidentdesk.db import crud
from incidentdesk.db.session import get_session
from incidentdesk.models.users import User

if TYPE_CHECKING:
    from clerk_backend_api.models.user import User as ClerkUser
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
SECURITY_DEP = Depends(security)
SESSION_DEP = Depends(get_session)
LOCAL_AUTH_USER_ID = "local-auth-user"
LOCAL_AUTH_NAME = "Local Administrator"
LOCAL_AUTH_ROLE = "SuperAdmin"


class ClerkTokenPayload(BaseModel):
    """JWT claims required from Clerk session tokens."""

    sub: str


@dataclass
class AuthContext:
    """Authenticated principal resolved from the inbound request."""

    user: User


@dataclass(frozen=True)
class _Identity:
    """Email and display name known for a Clerk principal."""

    email: str | None = None
    name: str | None = None

    def fill(self, fallback: _Identity) -> _Identity:
        return _Identity(email=self.email or fallback.email, name=self.name or fallback.name)


def _extract_bearer_token(authorization: str | None) -> str | None:
    scheme, _, token = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _identity_from_claims(claims: dict[str, object]) -> _Identity:
    emails: list[object] = [claims.get("email"), claims.get("email_address")]
    addresses = claims.get("email_addresses")
    if isinstance(addresses, list):
        emails.extend(a.get("email_address") if isinstance(a, dict) else a for a in addresses)
    email = next((text.lower() for text in map(_text, emails) if text), None)

    name = _text(claims.get("name")) or " ".join(
        part
        for part in (_text(claims.get("given_name")), _text(claims.get("family_name")))
        if part
    )
    return _Identity(email=email, name=name or None)


def _identity_from_profile(profile: ClerkUser) -> _Identity:
    primary_id = getattr(profile, "primary_email_address_id", None)
    addresses = getattr(profile, "email_addresses", None) or []
    # Prefer the primary address, else the first one on the profile.
    ordered = sorted(addresses, key=lambda item: getattr(item, "id", None) != primary_id)
    email = next(
        (text.lower() for item in ordered if (text := _text(getattr(item, "email_address", None)))),
        None,
    )
    name = " ".join(
        part
        for part in (
            _text(getattr(profile, "first_name", None)),
            _text(getattr(profile, "last_name", None)),
        )
        if part
    ) or _text(getattr(profile, "username", None))
    return _Identity(email=email, name=name)


def _clerk_server_url() -> str | None:
    base = (settings.clerk_api_url or "").strip().rstrip("/")
    if not base:
        return None
    return base if base.endswith("/v1") else f"{base}/v1"


async def _authenticate_clerk_request(request: Request) -> RequestState:
    # The SDK verifies an httpx.Request, so the ASGI request is re-expressed as one.
    options = AuthenticateRequestOptions(
        secret_key=settings.clerk_secret_key.strip(),
        clock_skew_in_ms=int(settings.clerk_leeway * 1000),
        accepts_token=["session_token"],
    )
    probe = httpx.Request(request.method, str(request.url), headers=dict(request.headers))
    sdk = Clerk(bearer_auth=options.secret_key or "")
    return await run_in_threadpool(sdk.authenticate_request, probe, options)


async def _fetch_clerk_identity(clerk_user_id: str) -> _Identity:
    try:
        async with Clerk(
            bearer_auth=settings.clerk_secret_key.strip(),
            server_url=_clerk_server_url(),
            timeout_ms=5000,
        ) as clerk:
            profile = await clerk.users.get_async(user_id=clerk_user_id)
    except (ClerkErrors, SDKError, httpx.HTTPError) as exc:
        logger.warning(
            "auth.clerk.profile.fetch_failed",
            extra={"clerk_user_id": clerk_user_id[-6:], "error_type": type(exc).__name__},
        )
        return _Identity()
    return _identity_from_profile(profile) if profile is not None else _Identity()


async def _sync_clerk_principal(
    session: AsyncSession,
    *,
    clerk_user_id: str,
    claims: dict[str, object],
) -> User:
    from_claims = _identity_from_claims(claims)
    user, created = await crud.get_or_create(
        session,
        User,
        clerk_user_id=clerk_user_id,
        defaults={"email": from_claims.email, "name": from_claims.name},
    )
    identity = from_claims
    # Clerk is only consulted for principals with incomplete local profiles.
    if created or not user.email or not user.name:
        identity = (await _fetch_clerk_identity(clerk_user_id)).fill(from_claims)

    updates: dict[str, object] = {}
    if identity.email and user.email != identity.email:
        updates["email"] = identity.email
    if identity.name and not user.name:
        updates["name"] = identity.name
    if updates:
        await crud.patch(session, user, updates)
        logger.info(
            "auth.principal.synced",
            extra={"user_id": str(user.id), "fields": sorted(updates)},
        )
    return user


async def _get_or_create_local_user(session: AsyncSession) -> User:
    user, created = await crud.get_or_create(
        session,
        User,
        clerk_user_id=LOCAL_AUTH_USER_ID,
        defaults={
            "email": settings.local_auth_user_email.strip().lower(),
            "name": LOCAL_AUTH_NAME,
            "role": LOCAL_AUTH_ROLE,
        },
    )
    if created:
        logger.info("auth.local_user.created", extra={"user_id": str(user.id)})
    return user


def _require_active(user: User) -> AuthContext:
    if not user.is_active:
        logger.info("auth.user.inactive", extra={"user_id": str(user.id)})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is deactivated")
    return AuthContext(user=user)


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = SECURITY_DEP,
    session: AsyncSession = SESSION_DEP,
) -> AuthContext:
    """Resolve the authenticated, active principal for the configured auth mode."""
    if settings.auth_mode == AuthMode.LOCAL:
        token = _extract_bearer_token(request.headers.get("Authorization"))
        expected = settings.local_auth_token.strip()
        if token is None or not expected or not compare_digest(token, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return _require_active(await _get_or_create_local_user(session))

    request_state = await _authenticate_clerk_request(request)
    if request_state.status != AuthStatus.SIGNED_IN or not isinstance(request_state.payload, dict):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    claims: dict[str, object] = {str(k): v for k, v in request_state.payload.items()}
    try:
        clerk_user_id = ClerkTokenPayload.model_validate(claims).sub
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED) from exc
    if not clerk_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    user = await _sync_clerk_principal(session, clerk_user_id=clerk_user_id, claims=claims)
    return _require_active(user)
