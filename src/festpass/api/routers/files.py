"""Signed-URL file serving for stored photos and credentials."""

from __future__ import annotations

import mimetypes

from fastapi import APIRouter, HTTPException, Request, Response

router = APIRouter(tags=["files"])


@router.get("/files/{bucket}/{key:path}")
def get_file(bucket: str, key: str, request: Request, expires: int = 0, sig: str = ""):
    storage = request.app.state.storage
    if not sig or not storage.verify(bucket, key, expires, sig):
        raise HTTPException(status_code=403, detail="Invalid or expired link")
    data = storage.get(bucket, key)
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
