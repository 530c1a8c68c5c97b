"""Feed post router: the records that own generated images."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.feed_post import FeedPost
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.billing import ensure_user

router = APIRouter()


class CreatePostRequest(BaseModel):
    user_id: Optional[str] = None
    feed_id: Optional[str] = Field(default=None, max_length=64)
    position: int = Field(default=0, ge=0, le=500)
    post_type: Literal["portrait", "lifestyle", "flatlay", "quote"] = "portrait"
    prompt: Optional[str] = Field(default=None, max_length=2000)
    caption: Optional[str] = Field(default=None, max_length=2200)
    brand_vibe: Optional[str] = Field(default=None, max_length=200)
    color_palette: Optional[str] = Field(default=None, max_length=200)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_post(post: FeedPost) -> Dict[str, Any]:
    return {
        "id": post.id,
        "user_id": post.user_id,
        "feed_id": post.feed_id,
        "position": post.position,
        "post_type": post.post_type,
        "prompt": post.prompt,
        "caption": post.caption,
        "status": post.status,
        "generation_mode": post.generation_mode,
        "generation_version": post.generation_version,
        "job_handle": post.job_handle,
        "result_url": post.result_url,
        "credit_cost": post.credit_cost,
        "error_code": post.error_code,
        "error_message": post.error_message,
        "generation_started_at": _iso(post.generation_started_at),
        "completed_at": _iso(post.completed_at),
        "created_at": _iso(post.created_at),
    }


@router.post("")
async def create_post(
    request: CreatePostRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    # New slots have nothing in flight until the first generate call.
    post = FeedPost(
        user_id=scoped_user_id,
        feed_id=request.feed_id,
        position=request.position,
        post_type=request.post_type,
        prompt=request.prompt,
        caption=request.caption,
        brand_vibe=request.brand_vibe,
        color_palette=request.color_palette,
        status="draft",
        generation_version=0,
    )
    db.add(post)
    await db.commit()
    await db.refresh(post)
    return serialize_post(post)


@router.get("")
async def list_posts(
    feed_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    query = select(FeedPost).where(FeedPost.user_id == auth.user_id)
    if feed_id:
        query = query.where(FeedPost.feed_id == feed_id)
    result = await db.execute(query.order_by(FeedPost.position.asc(), FeedPost.created_at.desc()).limit(limit))
    return {"posts": [serialize_post(post) for post in result.scalars().all()]}


@router.get("/{post_id}")
async def get_post(
    post_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(FeedPost).where(FeedPost.id == post_id))
    post = result.scalar_one_or_none()
    if not post or post.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Post not found")
    return serialize_post(post)
