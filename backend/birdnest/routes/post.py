"""
Post routes (mounted at /post): image upload and post creation.

Uploaded images land in UPLOAD_DIR and are served back under /img by the
static assets stage.
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from backend.birdnest.auth.guards import require_login
from backend.birdnest.core.database import get_db
from backend.birdnest.core.errors import BadRequestError
from backend.birdnest.models import Hashtag, Post

router = APIRouter(tags=["posts"])

HASHTAG_PATTERN = re.compile(r"#[^\s#]+")
MAX_CONTENT_LENGTH = 140
MAX_HASHTAG_LENGTH = 15


def extract_hashtags(content: str) -> List[str]:
    """Unique lower-cased tags in order of appearance, without the '#'."""
    seen: List[str] = []
    for match in HASHTAG_PATTERN.findall(content):
        tag = match[1:].lower()[:MAX_HASHTAG_LENGTH]
        if tag not in seen:
            seen.append(tag)
    return seen


def upload_name(original: str) -> str:
    path = Path(original or "upload")
    stem = re.sub(r"[^\w.-]", "_", path.stem) or "upload"
    return f"{stem}{int(time.time() * 1000)}{path.suffix.lower()}"


async def _form_fields(request: Request) -> Dict[str, Any]:
    # JSON / urlencoded bodies are already parsed; multipart forms are not
    if request.state.body:
        return request.state.body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _store_upload(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


@router.post("/img", dependencies=[Depends(require_login)])
async def upload_image(request: Request, img: UploadFile = File(...)):
    upload_dir: Path = request.app.state.settings.UPLOAD_DIR
    filename = upload_name(img.filename or "")
    data = await img.read()
    await run_in_threadpool(_store_upload, upload_dir / filename, data)
    return {"url": f"/img/{filename}"}


@router.post("", dependencies=[Depends(require_login)])
async def create_post(request: Request, db: AsyncSession = Depends(get_db)):
    fields = await _form_fields(request)
    content = str(fields.get("content") or "").strip()
    if not content:
        raise BadRequestError("Post content is required")
    if len(content) > MAX_CONTENT_LENGTH:
        raise BadRequestError(f"Post content is limited to {MAX_CONTENT_LENGTH} characters")

    post = Post(
        content=content,
        img=str(fields.get("url") or "") or None,
        user_id=request.state.user.id,
    )
    for title in extract_hashtags(content):
        existing = await db.execute(select(Hashtag).where(Hashtag.title == title))
        tag = existing.scalar_one_or_none() or Hashtag(title=title)
        post.hashtags.append(tag)
    db.add(post)
    await db.commit()
    return RedirectResponse("/", status_code=303)
