"""
PostgreSQL persistence layer for the Permissions Service.

Reads household roles from the application database and stores the packed
rule set alongside the user record (``"user".permissions``).
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg
from shared.logging import get_logger
from shared.errors import ExternalServiceError


class PostgreSQLPersistence:
    """Role-data source and packed-permission store backed by PostgreSQL."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("permissions.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )
            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    # Role data. Errors propagate; the compiler reports them as RoleDataUnavailable.

    async def get_household_roles_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT household_id, role FROM household_member
                WHERE user_id = $1
                ORDER BY joined_at ASC, household_id ASC
            """, user_id)
        return [{"household_id": str(row["household_id"]), "role": row["role"]} for row in rows]

    async def get_managed_users(self, user_id: str) -> List[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id FROM "user" WHERE managed_by = $1 ORDER BY id
            """, user_id)
        return [str(row["id"]) for row in rows]

    async def get_ai_users(self, household_id: str) -> List[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT user_id FROM household_member
                WHERE household_id = $1 AND role = 'ai'
                ORDER BY user_id
            """, household_id)
        return [str(row["user_id"]) for row in rows]

    async def get_household_members(self, household_id: str) -> List[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT user_id FROM household_member
                WHERE household_id = $1
                ORDER BY user_id
            """, household_id)
        return [str(row["user_id"]) for row in rows]

    # Packed permissions

    async def load_packed_permissions(self, user_id: str) -> Optional[Any]:
        """Load the persisted packed rules, or None when absent or unreadable."""
        try:
            async with self.pool.acquire() as conn:
                value = await conn.fetchval("""
                    SELECT permissions FROM "user" WHERE id = $1
                """, user_id)
        except Exception as e:
            self.logger.error("Error loading packed permissions", user_id=user_id, error=str(e))
            return None

        if value is None:
            return None
        if isinstance(value, (str, bytes)):
            try:
                return json.loads(value)
            except ValueError:
                self.logger.warning("Persisted permissions are not valid JSON", user_id=user_id)
                return None
        return value

    async def save_packed_permissions(self, user_id: str, packed: List[Any]) -> bool:
        """Persist packed rules on the user record."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    UPDATE "user" SET permissions = $2::jsonb, updated_at = NOW()
                    WHERE id = $1
                """, user_id, json.dumps(packed))

            self.logger.debug("Packed permissions saved", user_id=user_id, rules=len(packed))
            return True

        except Exception as e:
            self.logger.error("Error saving packed permissions", user_id=user_id, error=str(e))
            return False

    async def clear_packed_permissions(self, user_id: str) -> None:
        """Drop the persisted packed rules so the next read recompiles."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    UPDATE "user" SET permissions = NULL WHERE id = $1
                """, user_id)
        except Exception as e:
            self.logger.error("Error clearing packed permissions", user_id=user_id, error=str(e))
            raise ExternalServiceError("postgres", str(e), {"user_id": user_id}) from e

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
