"""Authentication router: all /api/auth/* endpoints."""

from __future__ import annotations

import json
import uuid
from typing import Any
from urllib.parse import quote, urlencode

import structlog
from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from citadel.auth.dependencies import (
    client_ip,
    client_user_agent,
    get_current_principal,
    get_current_user,
)
from citadel.auth.identity import LinkingChallenge, OAuthProfile, confirm_linking, resolve_identity
from citadel.auth.jwt import AccessClaims, create_state_token, verify_token
from citadel.auth.providers import OAuthExchanger, get_oauth_exchanger
from citadel.auth.roles import Provider
from citadel.auth.schemas import (
    AppleMobileRequest,
    AuthResponse,
    ExistingUserSummary,
    GoogleMobileRequest,
    LinkingResponse,
    LinkProviderRequest,
    LogoutRequest,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from citadel.auth.service import (
    issue_tokens,
    list_sessions,
    revoke_all_sessions,
    revoke_refresh_token,
    revoke_session,
    rotate_refresh_token,
)
from citadel.config import get_settings
from citadel.database import get_session
from citadel.db.models import User
from citadel.errors import AppError, InvalidTokenError
from citadel.responses import ok

logger = structlog.get_logger()

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


async def _complete_sign_in(
    db: AsyncSession,
    profile: OAuthProfile,
    request: Request,
) -> AuthResponse | LinkingResponse:
    """Resolve the profile and either issue tokens or return a linking challenge."""
    outcome = await resolve_identity(db, profile)
    if isinstance(outcome, LinkingChallenge):
        await db.commit()
        return LinkingResponse(
            linking_token=outcome.linking_token,
            existing_user=ExistingUserSummary(
                id=outcome.user_id,
                email=outcome.email,
                name=outcome.name,
                providers=outcome.existing_providers,
            ),
            new_provider=outcome.new_provider.value,
        )
    return await _issue_for(db, outcome.user, request)


async def _issue_for(db: AsyncSession, user: User, request: Request) -> AuthResponse:
    pair = await issue_tokens(db, user, ip_address=client_ip(request), user_agent=client_user_agent(request))
    await db.commit()
    logger.info("user_signed_in", user_id=user.id, role=user.role.value)
    return AuthResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        user=UserResponse.model_validate(user),
    )


def _redirect_with_result(result: AuthResponse | LinkingResponse) -> RedirectResponse:
    """Hand the outcome to the admin panel in the URL fragment (never sent to servers)."""
    settings = get_settings()
    fragment = "linking" if isinstance(result, LinkingResponse) else "data"
    payload = json.dumps(result.model_dump(by_alias=True, mode="json"))
    return RedirectResponse(f"{settings.oauth_redirect_url}#{fragment}={quote(payload)}", status_code=302)


def _redirect_with_error(code: str) -> RedirectResponse:
    settings = get_settings()
    return RedirectResponse(f"{settings.oauth_redirect_url}?{urlencode({'error': code})}", status_code=302)


def _check_state(state: str | None, provider: Provider) -> None:
    if not state:
        msg = "Missing OAuth state"
        raise InvalidTokenError(msg)
    payload = verify_token(state, expected_type="oauth_state")
    if payload.get("sub") != provider.value:
        msg = "OAuth state does not match provider"
        raise InvalidTokenError(msg)


# ---------------------------------------------------------------------------
# Web OAuth (redirect flow)
# ---------------------------------------------------------------------------


@router.get("/google")
async def google_login(exchanger: OAuthExchanger = Depends(get_oauth_exchanger)) -> dict[str, Any]:
    """Return the Google consent URL."""
    return ok({"url": exchanger.authorization_url(Provider.GOOGLE, create_state_token(Provider.GOOGLE.value))})


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    db: AsyncSession = Depends(get_session),
    exchanger: OAuthExchanger = Depends(get_oauth_exchanger),
) -> RedirectResponse:
    """Google redirects here after consent."""
    if error or not code:
        return _redirect_with_error(error or "missing_code")
    try:
        _check_state(state, Provider.GOOGLE)
        profile = await exchanger.google_profile_from_code(code)
        result = await _complete_sign_in(db, profile, request)
    except AppError as exc:
        logger.warning("oauth_callback_failed", provider="google", code=exc.code)
        return _redirect_with_error(exc.code.lower())
    return _redirect_with_result(result)


@router.get("/apple")
async def apple_login(exchanger: OAuthExchanger = Depends(get_oauth_exchanger)) -> dict[str, Any]:
    """Return the Apple consent URL."""
    return ok({"url": exchanger.authorization_url(Provider.APPLE, create_state_token(Provider.APPLE.value))})


@router.post("/apple/callback")
async def apple_callback(
    request: Request,
    code: str | None = Form(None),
    state: str | None = Form(None),
    user: str | None = Form(None),
    error: str | None = Form(None),
    db: AsyncSession = Depends(get_session),
    exchanger: OAuthExchanger = Depends(get_oauth_exchanger),
) -> RedirectResponse:
    """Apple posts the authorization result as a form."""
    if error or not code:
        return _redirect_with_error(error or "missing_code")
    try:
        _check_state(state, Provider.APPLE)
        profile = await exchanger.apple_profile_from_code(code, user)
        result = await _complete_sign_in(db, profile, request)
    except AppError as exc:
        logger.warning("oauth_callback_failed", provider="apple", code=exc.code)
        return _redirect_with_error(exc.code.lower())
    return _redirect_with_result(result)


# ---------------------------------------------------------------------------
# Mobile OAuth (ID token flow)
# ---------------------------------------------------------------------------


@router.post("/google/mobile")
async def google_mobile(
    body: GoogleMobileRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    exchanger: OAuthExchanger = Depends(get_oauth_exchanger),
) -> dict[str, Any]:
    """Sign in with a Google ID token obtained by a native app."""
    profile = await exchanger.google_profile_from_id_token(body.id_token)
    return ok(await _complete_sign_in(db, profile, request))


@router.post("/apple/mobile")
async def apple_mobile(
    body: AppleMobileRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    exchanger: OAuthExchanger = Depends(get_oauth_exchanger),
) -> dict[str, Any]:
    """Sign in with an Apple identity token obtained by a native app."""
    profile = await exchanger.apple_profile_from_id_token(body.identity_token, name=body.name)
    return ok(await _complete_sign_in(db, profile, request))


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


@router.post("/link-provider")
async def link_provider(
    body: LinkProviderRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Confirm or decline attaching a new provider to an existing account."""
    resolved = await confirm_linking(db, body.linking_token, confirm=body.confirm)
    if resolved is None:
        return ok(message="Account linking cancelled")
    return ok(await _issue_for(db, resolved.user, request), message="Account linked successfully")


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post("/refresh")
async def refresh(
    body: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Rotate a refresh token."""
    pair = await rotate_refresh_token(
        db,
        body.refresh_token,
        ip_address=client_ip(request),
        user_agent=client_user_agent(request),
    )
    return ok(
        TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )
    )


@router.get("/verify")
async def verify(user: User = Depends(get_current_user)) -> dict[str, Any]:
    """200 with the user if the access token is valid."""
    return ok({"valid": True, "user": UserResponse.model_validate(user)})


@router.post("/logout")
async def logout(
    body: LogoutRequest | None = None,
    principal: AccessClaims = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Revoke the presented session, or every session with ``logoutAll``."""
    body = body or LogoutRequest()
    if body.logout_all:
        count = await revoke_all_sessions(db, principal.id)
        await db.commit()
        logger.info("logout_all", user_id=principal.id, revoked=count)
        return ok({"revokedSessions": count}, message="Logged out from all sessions")
    if body.refresh_token:
        await revoke_refresh_token(db, body.refresh_token, user_id=principal.id)
        await db.commit()
    logger.info("logout", user_id=principal.id)
    return ok(message="Logged out successfully")


@router.get("/sessions")
async def sessions(
    principal: AccessClaims = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List live sessions of the caller."""
    rows = await list_sessions(db, principal.id)
    return ok([SessionResponse.model_validate(row) for row in rows])


@router.delete("/sessions/{session_id}")
async def delete_session(
    session_id: uuid.UUID,
    principal: AccessClaims = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Revoke one of the caller's sessions."""
    await revoke_session(db, str(session_id), user_id=principal.id)
    await db.commit()
    return ok(message="Session revoked")
