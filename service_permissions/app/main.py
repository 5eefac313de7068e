"""
Permissions service for the household application.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.logging import set_user_context
from shared.errors import ServiceException

from .authorization import AuthorizationService
from .cache.permission_cache import CacheBackend, MemoryCacheBackend, PermissionCache
from .cache.redis_cache import RedisCacheBackend
from .events.consumer import EventConsumer
from .events.handlers import PermissionEventHandler
from .persistence.postgres import PostgreSQLPersistence
from .rules.models import (
    PermissionCheckRequest, PermissionCheckResponse,
    PackedRulesResponse, InvalidationResponse,
)


class PermissionsService(BaseService):
    """Permissions service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        persistence: Optional[PostgreSQLPersistence] = None,
        cache_backend: Optional[CacheBackend] = None,
    ):
        super().__init__("permissions", 8012, config)

        # Initialize components
        self.persistence = persistence or PostgreSQLPersistence(self.config.postgres_dsn)
        self.cache_backend = cache_backend or self._create_cache_backend()
        self.cache = PermissionCache(
            role_source=self.persistence,
            store=self.persistence,
            backend=self.cache_backend,
            ttl_seconds=self.config.permission_cache_ttl_seconds,
            metrics=self.metrics,
        )
        self.authorization = AuthorizationService(self.cache, self.metrics)
        self.event_handler = PermissionEventHandler(self.cache, self.metrics)
        self.consumer: Optional[EventConsumer] = None
        if self.config.enable_event_consumer:
            self.consumer = EventConsumer(
                self.config.kafka_bootstrap,
                self.config.kafka_group_id,
                self.event_handler,
            )

        self._setup_permissions_routes()

    def _create_cache_backend(self) -> CacheBackend:
        if self.config.cache_backend == "redis":
            return RedisCacheBackend(self.config.redis_url)
        if self.config.cache_backend != "memory":
            self.logger.warning("Unknown cache backend, using memory", cache_backend=self.config.cache_backend)
        return MemoryCacheBackend()

    def _setup_permissions_routes(self):
        """Set up permissions-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "permissions",
                "message": "Household Permissions Service",
                "version": "1.0.0",
                "capabilities": ["rule_compiler", "caching", "persistence", "events"]
            }

        @self.app.post("/permissions/check", response_model=PermissionCheckResponse)
        async def check_permission(request: PermissionCheckRequest):
            """Check whether a user may perform an action."""
            set_user_context(user_id=request.user_id)
            try:
                result = await self.authorization.evaluate(
                    request.user_id, request.action, request.subject_type, request.instance
                )
            except ServiceException:
                raise
            except Exception as e:
                self.logger.error("Error checking permission", user_id=request.user_id, error=str(e))
                raise HTTPException(status_code=500, detail="Internal server error")

            return PermissionCheckResponse(
                allowed=result.allowed,
                reason=result.reason,
                matched_rule=result.matched_rule,
            )

        @self.app.get("/permissions/{user_id}/rules", response_model=PackedRulesResponse)
        async def get_packed_rules(user_id: str):
            """Packed rule set for client-side evaluation."""
            set_user_context(user_id=user_id)
            rules = await self.authorization.packed_rules_for(user_id)
            return PackedRulesResponse(user_id=user_id, rules=rules)

        @self.app.post("/permissions/{user_id}/invalidate", response_model=InvalidationResponse)
        async def invalidate_user(user_id: str):
            """Drop a user's cached rule set."""
            await self.authorization.invalidate_user(user_id)
            return InvalidationResponse(scope="user", target_id=user_id, invalidated_users=[user_id])

        @self.app.post(
            "/permissions/households/{household_id}/invalidate",
            response_model=InvalidationResponse,
        )
        async def invalidate_household(household_id: str):
            """Drop the cached rule sets of every household member."""
            set_user_context(household_id=household_id)
            users = await self.authorization.invalidate_household(household_id)
            return InvalidationResponse(scope="household", target_id=household_id, invalidated_users=users)

        @self.app.get("/permissions/stats")
        async def get_stats():
            """Get permissions service statistics."""
            stats: Dict[str, Any] = {"timestamp": datetime.now().isoformat()}
            stats["cache"] = await self.cache_backend.get_cache_stats()
            stats["event_consumer"] = bool(self.consumer and self.consumer.is_running())
            return stats

    async def _check_dependencies(self):
        """Check permissions service dependencies."""
        dependencies = {}

        # Check cache backend
        try:
            if await self.cache_backend.health_check():
                dependencies["cache"] = "ok"
            else:
                dependencies["cache"] = "error"
        except Exception:
            dependencies["cache"] = "error"

        # Check PostgreSQL
        try:
            if await self.persistence.health_check():
                dependencies["postgres"] = "ok"
            else:
                dependencies["postgres"] = "error"
        except Exception:
            dependencies["postgres"] = "error"

        if self.consumer:
            dependencies["kafka"] = "ok" if self.consumer.is_running() else "error"

        return dependencies

    async def start(self):
        """Start permissions service components."""
        await self.persistence.start()
        await self.cache_backend.start()
        if self.consumer:
            await self.consumer.start()

        self.logger.info(
            "Permissions service started",
            cache_backend=type(self.cache_backend).__name__,
            event_consumer=self.consumer is not None,
        )

    async def stop(self):
        """Stop permissions service components."""
        if self.consumer:
            await self.consumer.stop()
        await self.cache_backend.stop()
        await self.persistence.stop()

        self.logger.info("Permissions service stopped")


def create_app():
    """Create permissions service application."""
    service = PermissionsService()
    return service.app


if __name__ == "__main__":
    service = PermissionsService()
    service.run()
