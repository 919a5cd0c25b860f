"""
api/routes/v1/external.py -- External provider sign-in and account linking.

Routes:
  GET    /api/v1/auth/external/providers    -- configured providers (public)
  POST   /api/v1/auth/external/challenge    -- start a flow; returns the authorize URL
  GET    /api/v1/auth/external/callback     -- browser redirect target (?code=&state=)
  POST   /api/v1/auth/external/callback     -- same, for mobile apps posting JSON
  DELETE /api/v1/auth/external/{provider}   -- unlink (requires auth)

A challenge started by a signed-in caller links the provider to that account.
The callback also honours a caller authenticated on the callback request
itself. Browser callbacks answer with cookies; mobile callbacks choose via
use_cookies.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    CallbackRequest,
    CallbackResponse,
    ChallengeRequest,
    ChallengeResponse,
    MessageResponse,
    ProviderInfo,
    TokenResponse,
)
from auth.dependencies import get_current_account, try_get_current_account
from auth.models import Account, CallbackOutcome
from auth.tokens import set_auth_cookies

router = APIRouter()


def _callback_response(request: Request, outcome: CallbackOutcome, use_cookies: bool) -> JSONResponse:
    tokens = TokenResponse.from_pair(outcome.tokens, use_cookies) if outcome.tokens else None
    content = CallbackResponse(
        provider=outcome.provider,
        user_id=outcome.account_id,
        is_new_account=outcome.is_new_account,
        is_link_only=outcome.is_link_only,
        tokens=tokens,
    )
    resp = JSONResponse(content=content.model_dump())
    if outcome.tokens is not None and use_cookies:
        set_auth_cookies(resp, outcome.tokens, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/external/providers", response_model=list[ProviderInfo])
def list_providers(request: Request) -> list[ProviderInfo]:
    """Public: the login page renders one button per entry. Empty when none are configured."""
    providers = request.app.state.broker.available_providers()
    return [ProviderInfo(name=name, display_name=display) for name, display in providers]


@router.post("/auth/external/challenge", response_model=ChallengeResponse)
def create_challenge(request: Request, body: ChallengeRequest) -> ChallengeResponse:
    caller = try_get_current_account(request)
    url = request.app.state.broker.create_challenge(
        body.provider, body.redirect_uri, account_id=caller.id if caller else None
    )
    return ChallengeResponse(authorization_url=url)


@router.get("/auth/external/callback", response_model=CallbackResponse)
async def callback_get(request: Request, code: str = "", state: str = "") -> JSONResponse:
    caller = try_get_current_account(request)
    outcome = await request.app.state.broker.handle_callback(code, state, account_id=caller.id if caller else None)
    return _callback_response(request, outcome, use_cookies=True)


@router.post("/auth/external/callback", response_model=CallbackResponse)
async def callback_post(request: Request, body: CallbackRequest) -> JSONResponse:
    caller = try_get_current_account(request)
    outcome = await request.app.state.broker.handle_callback(
        body.code, body.state, account_id=caller.id if caller else None
    )
    return _callback_response(request, outcome, use_cookies=body.use_cookies)


@router.delete("/auth/external/{provider}", response_model=MessageResponse)
def unlink_provider(
    request: Request, provider: str, account: Account = Depends(get_current_account)
) -> MessageResponse:
    request.app.state.broker.unlink_provider(account.id, provider)
    return MessageResponse(message="Provider unlinked.")
