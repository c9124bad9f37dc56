"""Narrow interfaces to the systems velosync consumes but does not own.

The drain worker and intake receive these explicitly instead of reaching for
process-wide singletons. SQL-backed implementations live here as well; tests
substitute in-memory versions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from velosync.persistence.repos import activities as activities_repo
from velosync.persistence.repos import subjects as subjects_repo
from velosync.services.tiers import SubjectTierInfo


class CredentialStore(Protocol):
    async def get_access_token(self, subject_id: str) -> str | None: ...

    async def revoke(self, subject_id: str) -> bool: ...


class TierLookup(Protocol):
    async def get_tier(self, subject_id: str) -> SubjectTierInfo | None: ...


class SummaryStore(Protocol):
    async def upsert(self, summary: dict[str, Any]) -> None: ...

    async def delete(self, activity_id: str) -> int: ...

    async def delete_for_subject(self, subject_id: str) -> int: ...

    async def get(self, subject_id: str, activity_id: str) -> dict[str, Any] | None: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SqlCredentialStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_access_token(self, subject_id: str) -> str | None:
        async with self._session_factory() as session:
            credential = await subjects_repo.get_credential(session, subject_id)
        if credential is None or credential.revoked_at is not None:
            return None
        return credential.access_token

    async def revoke(self, subject_id: str) -> bool:
        async with self._session_factory() as session:
            revoked = await subjects_repo.revoke_credential(session, subject_id, revoked_at=_utc_now())
            await session.commit()
        return revoked


class SqlTierLookup:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_tier(self, subject_id: str) -> SubjectTierInfo | None:
        async with self._session_factory() as session:
            row = await subjects_repo.get_tier(session, subject_id)
        if row is None:
            return None
        return SubjectTierInfo(subject_id=row.subject_id, tier=row.tier, tier_expires_at=row.tier_expires_at)


class SqlSummaryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, summary: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            await activities_repo.upsert_summary(session, summary)
            await session.commit()

    async def delete(self, activity_id: str) -> int:
        async with self._session_factory() as session:
            deleted = await activities_repo.delete_summary(session, activity_id)
            await session.commit()
        return deleted

    async def delete_for_subject(self, subject_id: str) -> int:
        async with self._session_factory() as session:
            deleted = await activities_repo.delete_for_subject(session, subject_id)
            await session.commit()
        return deleted

    async def get(self, subject_id: str, activity_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await activities_repo.get_summary(session, activity_id, subject_id=subject_id)
        if row is None:
            return None
        return activities_repo.summary_to_dict(row)
