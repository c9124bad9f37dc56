from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from velosync.domain.models import SubjectCredential, SubjectTier


async def get_tier(session: AsyncSession, subject_id: str) -> SubjectTier | None:
    result = await session.execute(select(SubjectTier).where(SubjectTier.subject_id == subject_id))
    return result.scalar_one_or_none()


async def get_credential(session: AsyncSession, subject_id: str) -> SubjectCredential | None:
    result = await session.execute(
        select(SubjectCredential).where(SubjectCredential.subject_id == subject_id)
    )
    return result.scalar_one_or_none()


async def revoke_credential(session: AsyncSession, subject_id: str, *, revoked_at: datetime) -> bool:
    # Clear the token and stamp revocation; repeated calls are harmless.
    result = await session.execute(
        update(SubjectCredential)
        .where(SubjectCredential.subject_id == subject_id)
        .values(access_token=None, revoked_at=revoked_at, updated_at=revoked_at)
    )
    return bool(result.rowcount)
