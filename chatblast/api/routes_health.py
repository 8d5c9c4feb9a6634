from __future__ import annotations

from fastapi import APIRouter, HTTPException

from chatblast.storage.db import db_ping

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    try:
        await db_ping()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"db unavailable: {e.__class__.__name__}")
    return {"status": "ok"}
