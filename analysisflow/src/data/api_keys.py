"""
API Key Store - Per-user Bearer keys for the coordinator endpoint.

Only the SHA-256 hash of a key is stored; the plain key is shown once, when
it is issued. Revoked keys stay in the table with revoked_at set.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import DatabasePool

logger = logging.getLogger(__name__)


@dataclass
class ApiKeyOwner:
    """User an API key was issued to."""
    user_id: str
    api_key_hash: str
    created_at: Optional[datetime] = None


class ApiKeyStore(ABC):
    """Storage for hashed user API keys."""

    @abstractmethod
    async def save(self, key_hash: str, user_id: str) -> ApiKeyOwner:
        """Store a newly issued key hash for user_id."""

    @abstractmethod
    async def find_owner(self, key_hash: str) -> Optional[ApiKeyOwner]:
        """Owner of an active key, or None if unknown or revoked."""

    @abstractmethod
    async def revoke(self, key_hash: str) -> bool:
        """Revoke an active key; False if it was unknown or already revoked."""


class PostgresApiKeyStore(ApiKeyStore):
    """ApiKeyStore on the api_keys table."""

    def __init__(self, db: 'DatabasePool'):
        self.db = db

    async def ensure_schema(self) -> None:
        async with self.db.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    key_hash CHAR(64) PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    last_used_at TIMESTAMPTZ,
                    revoked_at TIMESTAMPTZ
                );

                CREATE INDEX IF NOT EXISTS idx_api_keys_user
                    ON api_keys (user_id);
            """)
        logger.info("API key table ready")

    async def save(self, key_hash: str, user_id: str) -> ApiKeyOwner:
        row = await self.db.fetchrow(
            """
            INSERT INTO api_keys (key_hash, user_id)
            VALUES ($1, $2)
            RETURNING user_id, key_hash, created_at
            """,
            key_hash, user_id,
        )
        return _owner_from_row(row)

    async def find_owner(self, key_hash: str) -> Optional[ApiKeyOwner]:
        row = await self.db.fetchrow(
            """
            UPDATE api_keys SET last_used_at = NOW()
            WHERE key_hash = $1 AND revoked_at IS NULL
            RETURNING user_id, key_hash, created_at
            """,
            key_hash,
        )
        return _owner_from_row(row) if row else None

    async def revoke(self, key_hash: str) -> bool:
        revoked = await self.db.fetchval(
            """
            UPDATE api_keys SET revoked_at = NOW()
            WHERE key_hash = $1 AND revoked_at IS NULL
            RETURNING key_hash
            """,
            key_hash,
        )
        return revoked is not None


def _owner_from_row(row) -> ApiKeyOwner:
    return ApiKeyOwner(
        user_id=str(row['user_id']),
        api_key_hash=row['key_hash'],
        created_at=row['created_at'],
    )
