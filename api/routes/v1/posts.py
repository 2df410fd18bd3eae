"""
api/routes/v1/posts.py -- Post, comment and reaction routes.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST   /posts                      -- create post
  GET    /posts                      -- paginated / searchable listing (cached)
  DELETE /posts                      -- delete every post (admin only)
  GET    /posts/top-commented        -- aggregate ranking (cached)
  GET    /posts/top-liked            -- aggregate ranking (cached)
  GET    /posts/{post_id}            -- single post with comments (cached)
  PUT    /posts/{post_id}            -- update (author or admin)
  DELETE /posts/{post_id}            -- delete (author or admin)
  POST   /posts/{post_id}/like       -- toggle like
  POST   /posts/{post_id}/dislike    -- toggle dislike
  POST   /posts/{post_id}/comments   -- add comment

All routes require authentication. Handlers only translate HTTP to
PostService calls; caching and invalidation live in blog/service.py.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request

from api.limiter import limiter
from api.models import (
    POST_ID_PATTERN,
    SEARCH_PATTERN,
    CachedResponse,
    CommentCreate,
    MessageResponse,
    PostCreate,
    PostUpdate,
)
from auth.dependencies import get_current_principal, require_admin
from auth.models import AccessClaims
from blog.models import Post
from blog.service import PostService

router = APIRouter(dependencies=[Depends(get_current_principal)])

PostIdParam = Annotated[str, Path(pattern=POST_ID_PATTERN)]


def _service(request: Request) -> PostService:
    return request.app.state.posts


async def _require_author_or_admin(service: PostService, post_id: str, principal: AccessClaims) -> None:
    if principal.role == "admin":
        return
    if await service.owner_of(post_id) != principal.principal_id:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Only the author or an admin may change this post."},
        )


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/posts", response_model=MessageResponse, status_code=201)
async def create_post(
    request: Request,
    body: PostCreate,
    principal: AccessClaims = Depends(get_current_principal),
) -> MessageResponse:
    created = await _service(request).create_post(
        Post(id=body.id, title=body.title, content=body.content, user_id=principal.principal_id)
    )
    return MessageResponse(message="Post created successfully.", data=created)


@limiter.limit("60/minute")
@router.get("/posts", response_model=CachedResponse)
async def list_posts(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = Query("", max_length=100, pattern=SEARCH_PATTERN),
) -> CachedResponse:
    return CachedResponse.from_read(await _service(request).list_posts(page=page, limit=limit, search=search))


@router.delete("/posts", response_model=MessageResponse)
async def delete_all_posts(
    request: Request,
    principal: AccessClaims = Depends(require_admin),
) -> MessageResponse:
    deleted = await _service(request).delete_all_posts()
    return MessageResponse(message="All posts deleted.", data={"deleted": deleted})


# ---------------------------------------------------------------------------
# Aggregates (registered before /posts/{post_id})
# ---------------------------------------------------------------------------


@router.get("/posts/top-commented", response_model=CachedResponse)
async def top_commented(request: Request) -> CachedResponse:
    return CachedResponse.from_read(await _service(request).top_commented())


@router.get("/posts/top-liked", response_model=CachedResponse)
async def top_liked(request: Request) -> CachedResponse:
    return CachedResponse.from_read(await _service(request).top_liked())


# ---------------------------------------------------------------------------
# Single post
# ---------------------------------------------------------------------------


@limiter.limit("60/minute")
@router.get("/posts/{post_id}", response_model=CachedResponse)
async def get_post(request: Request, post_id: PostIdParam) -> CachedResponse:
    return CachedResponse.from_read(await _service(request).get_post(post_id))


@limiter.limit("30/minute")
@router.put("/posts/{post_id}", response_model=MessageResponse)
async def update_post(
    request: Request,
    body: PostUpdate,
    post_id: PostIdParam,
    principal: AccessClaims = Depends(get_current_principal),
) -> MessageResponse:
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    service = _service(request)
    await _require_author_or_admin(service, post_id, principal)
    updated = await service.update_post(post_id, **updates)
    return MessageResponse(message="Post updated successfully.", data=updated)


@limiter.limit("30/minute")
@router.delete("/posts/{post_id}", response_model=MessageResponse)
async def delete_post(
    request: Request,
    post_id: PostIdParam,
    principal: AccessClaims = Depends(get_current_principal),
) -> MessageResponse:
    service = _service(request)
    await _require_author_or_admin(service, post_id, principal)
    await service.delete_post(post_id)
    return MessageResponse(message="Post deleted successfully.", data={"deleted_post_id": post_id})


# ---------------------------------------------------------------------------
# Reactions and comments
# ---------------------------------------------------------------------------


@router.post("/posts/{post_id}/like", response_model=MessageResponse)
async def toggle_like(
    request: Request,
    post_id: PostIdParam,
    principal: AccessClaims = Depends(get_current_principal),
) -> MessageResponse:
    counts = await _service(request).toggle_like(post_id, principal.principal_id)
    return MessageResponse(message="Like toggled.", data=counts)


@router.post("/posts/{post_id}/dislike", response_model=MessageResponse)
async def toggle_dislike(
    request: Request,
    post_id: PostIdParam,
    principal: AccessClaims = Depends(get_current_principal),
) -> MessageResponse:
    counts = await _service(request).toggle_dislike(post_id, principal.principal_id)
    return MessageResponse(message="Dislike toggled.", data=counts)


@router.post("/posts/{post_id}/comments", response_model=MessageResponse, status_code=201)
async def add_comment(
    request: Request,
    body: CommentCreate,
    post_id: PostIdParam,
    principal: AccessClaims = Depends(get_current_principal),
) -> MessageResponse:
    comment = await _service(request).add_comment(post_id, principal.principal_id, body.text)
    return MessageResponse(message="Comment added.", data=comment)
