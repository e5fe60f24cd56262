"""
auth/dependencies.py -- FastAPI Depends() helpers for the access-token contract.

Every protected route (auth, orders, profiles) authenticates the same way:
an `Authorization: Bearer <access token>` header whose payload is
{id, email, role}. Validity is purely cryptographic + TTL; access tokens are
never looked up server-side.

get_current_user()            -> AccessTokenPayload or HTTP 401
require_roles("ADMIN", ...)   -> dependency that also enforces the role (403)
check_row_level_permission()  -> callers may only act on their own records
                                 unless their role is privileged

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from fastapi import HTTPException, Request

from auth.models import ROLES, AccessTokenPayload
from auth.tokens import TokenError, TokenSigner


def decode_access_token(signer: TokenSigner, token: str) -> AccessTokenPayload | None:
    """Return the payload of a valid access token, or None on any failure.

    Tokens signed by us but lacking the session claims (e.g. registration
    completion tokens) are rejected here.
    """
    try:
        claims = signer.verify(token)
    except TokenError:
        return None
    if not all(isinstance(claims.get(k), str) for k in ("id", "email", "role")):
        return None
    return AccessTokenPayload(id=claims["id"], email=claims["email"], role=claims["role"])


def get_current_user(request: Request) -> AccessTokenPayload:
    """Require a valid Bearer access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: AccessTokenPayload = Depends(get_current_user)): ...
    """
    signer: TokenSigner = request.app.state.signer
    auth_header = request.headers.get("Authorization", "")
    payload = None
    if auth_header.startswith("Bearer "):
        payload = decode_access_token(signer, auth_header[7:])
    if payload is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return payload


def require_roles(*roles: str) -> Callable[[Request], AccessTokenPayload]:
    """Dependency factory: authenticated AND role in roles (all roles when empty).

        @router.patch("/orders/status/{id}")
        def route(user = Depends(require_roles("ADMIN", "STAFF"))): ...
    """
    allowed = set(roles or ROLES)

    def _dependency(request: Request) -> AccessTokenPayload:
        user = get_current_user(request)
        if user.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role."},
            )
        return user

    return _dependency


def check_row_level_permission(
    user: AccessTokenPayload,
    requested_uid: str | Sequence[str] | None,
    roles: Sequence[str] = (),
) -> bool:
    """Allow a request that targets requested_uid(s).

    Returns False when no uid was requested (nothing to check). Returns True
    when the caller's role is in roles (privileged bypass). Otherwise the
    caller's own id must be among the requested uids, else HTTP 403.
    """
    if not requested_uid:
        return False

    if user.role in roles:
        return True

    uids = [requested_uid] if isinstance(requested_uid, str) else [u for u in requested_uid if u]
    if user.id not in uids:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You may only access your own records."},
        )
    return True
