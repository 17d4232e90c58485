"""Persistence for proxy credentials."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import ProxyCredential, utcnow
from src.errors import DatabaseError
from src.proxy.types import Credential, CredentialStatus

logger = logging.getLogger(__name__)


def _to_credential(row: ProxyCredential) -> Credential:
    return Credential(
        id=row.id,
        identity=row.identity,
        secret=row.secret or "",
        quota_bytes=row.quota_bytes,
        used_bytes=row.used_bytes,
        status=CredentialStatus(row.status),
        service_type=row.service_type,
        external_id=row.external_id,
        created_at=row.created_at,
        last_checked_at=row.last_checked_at,
    )


class CredentialStore:
    """Reads and writes credentials through a SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load_all(self) -> list[Credential]:
        """
        Load every stored credential in insertion order.

        Rows whose secret could not be decrypted are skipped.
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(ProxyCredential).order_by(ProxyCredential.id))
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load proxy credentials: {e}") from e

        credentials = []
        for row in rows:
            if not row.secret:
                logger.warning(f"Skipping credential {row.id}: secret unreadable")
                continue
            credentials.append(_to_credential(row))
        return credentials

    async def get_by_identity(self, identity: str) -> Optional[Credential]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(ProxyCredential).where(ProxyCredential.identity == identity)
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read proxy credential: {e}") from e
        return _to_credential(row) if row else None

    async def save(self, credential: Credential) -> Credential:
        """
        Insert or update a credential keyed by identity.

        Returns:
            The credential with its database id and timestamps filled in
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(ProxyCredential).where(ProxyCredential.identity == credential.identity)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = ProxyCredential(identity=credential.identity)
                    db.add(row)

                row.secret = credential.secret
                row.external_id = credential.external_id
                row.service_type = credential.service_type
                row.status = credential.status.value
                row.quota_bytes = credential.quota_bytes
                row.used_bytes = credential.used_bytes
                row.last_checked_at = credential.last_checked_at
                if credential.created_at is not None:
                    row.created_at = credential.created_at

                await db.commit()
                await db.refresh(row)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to save proxy credential: {e}") from e

        credential.id = row.id
        credential.created_at = row.created_at
        return credential

    async def update_usage(
        self,
        credential_id: int,
        used_bytes: int,
        quota_bytes: int,
        status: CredentialStatus,
        checked_at: Optional[datetime] = None,
    ) -> None:
        """Persist a quota reading and the status derived from it."""
        try:
            async with self._session_factory() as db:
                row = await db.get(ProxyCredential, credential_id)
                if row is None:
                    return
                row.used_bytes = used_bytes
                row.quota_bytes = quota_bytes
                row.status = status.value
                row.last_checked_at = checked_at or utcnow()
                await db.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to update proxy credential usage: {e}") from e
