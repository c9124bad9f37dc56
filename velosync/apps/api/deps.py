from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from velosync.core.config import get_settings
from velosync.services.pipeline import Pipeline, get_pipeline


async def get_pipeline_dep() -> Pipeline:
    # Indirection point so tests can override wiring with in-memory collaborators.
    return await get_pipeline()


def require_subject(x_subject_id: str | None = Header(default=None, alias="X-Subject-Id")) -> str:
    # The upstream auth gateway resolves the caller and forwards the subject id.
    if not x_subject_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing subject identity"},
        )
    return x_subject_id


def require_ops_token(x_ops_token: str | None = Header(default=None, alias="X-Ops-Token")) -> None:
    settings = get_settings()
    if not x_ops_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing ops token"},
        )
    if not hmac.compare_digest(x_ops_token, settings.ops_token):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Invalid ops token"},
        )
