"""
api/routes/v1/users.py -- User directory routes.

Routes:
  GET    /users            -- paginated, searchable listing (admin only, cached)
  GET    /users/{user_id}  -- single user (admin or the user themself, cached)
  PATCH  /users/{user_id}  -- change username / role (admin only)
  DELETE /users/{user_id}  -- delete account (admin only)

Reads go through UserDirectory so they are cache-aside; writes invalidate
users:<id> and every users:all:* listing.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.limiter import limiter
from api.models import SEARCH_PATTERN, CachedResponse, MessageResponse, UserPatch
from auth.dependencies import get_current_principal, require_admin
from auth.models import AccessClaims
from blog.service import UserDirectory

router = APIRouter(dependencies=[Depends(get_current_principal)])


@limiter.limit("60/minute")
@router.get("/users", response_model=CachedResponse)
async def list_users(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = Query("", max_length=100, pattern=SEARCH_PATTERN),
    principal: AccessClaims = Depends(require_admin),
) -> CachedResponse:
    users: UserDirectory = request.app.state.users
    return CachedResponse.from_read(await users.list_users(page=page, limit=limit, search=search))


@limiter.limit("60/minute")
@router.get("/users/{user_id}", response_model=CachedResponse)
async def get_user(
    request: Request,
    user_id: int,
    principal: AccessClaims = Depends(get_current_principal),
) -> CachedResponse:
    """Admins may read anyone; regular users only themselves."""
    if principal.role != "admin" and principal.principal_id != user_id:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You may only view your own account."},
        )
    users: UserDirectory = request.app.state.users
    return CachedResponse.from_read(await users.get_user(user_id))


@router.patch("/users/{user_id}", response_model=MessageResponse)
async def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    principal: AccessClaims = Depends(require_admin),
) -> MessageResponse:
    updates = body.model_dump(exclude_none=True, mode="json")
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    users: UserDirectory = request.app.state.users
    updated = await users.update_user(user_id, **updates)
    return MessageResponse(message="User updated successfully.", data=updated)


@router.delete("/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    request: Request,
    user_id: int,
    principal: AccessClaims = Depends(require_admin),
) -> MessageResponse:
    """Delete an account. Admins cannot delete themselves."""
    if principal.principal_id == user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    users: UserDirectory = request.app.state.users
    await users.delete_user(user_id)
    return MessageResponse(message="User deleted successfully.", data={"deleted_user_id": user_id})
