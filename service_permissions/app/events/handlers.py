"""
Role-change event handling.

Each event names the user and/or household whose role data changed. The
handler drops the affected cached rule sets and eagerly recompiles the
directly affected user.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from shared.logging import clear_context, get_logger, set_user_context
from shared.errors import ValidationError
from shared.metrics import MetricsCollector
from ..cache.permission_cache import PermissionCache


MEMBER_ADDED = "household.member.added"
MEMBER_REMOVED = "household.member.removed"
MEMBER_ROLE_CHANGED = "household.member.role_changed"
MANAGED_RELATIONSHIP_CHANGED = "user.managed_relationship_changed"
PERMISSIONS_RECOMPUTE = "user.permissions.recompute"

# Older publishers use the dotted spelling
TOPIC_ALIASES = {
    "household.member.role.changed": MEMBER_ROLE_CHANGED,
}

MEMBERSHIP_TOPICS = (MEMBER_ADDED, MEMBER_REMOVED, MEMBER_ROLE_CHANGED)
USER_TOPICS = (MANAGED_RELATIONSHIP_CHANGED, PERMISSIONS_RECOMPUTE)
PERMISSION_TOPICS = MEMBERSHIP_TOPICS + USER_TOPICS


@dataclass(frozen=True)
class RoleChangeEvent:
    """Decoded role-change event."""
    event_type: str
    user_id: Optional[str] = None
    household_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_payload(cls, event_type: str, payload: Mapping[str, Any]) -> "RoleChangeEvent":
        """Build an event from a JSON payload; camelCase keys are accepted."""
        if not isinstance(payload, Mapping):
            raise ValidationError("Event payload must be an object", {"event_type": event_type})

        event_type = TOPIC_ALIASES.get(event_type, event_type)
        if event_type not in PERMISSION_TOPICS:
            raise ValidationError("Unknown event type", {"event_type": event_type})

        user_id = payload.get("user_id", payload.get("userId"))
        household_id = payload.get("household_id", payload.get("householdId"))

        if event_type in USER_TOPICS and not user_id:
            raise ValidationError("Event requires user_id", {"event_type": event_type})
        if event_type in MEMBERSHIP_TOPICS and not (user_id or household_id):
            raise ValidationError("Event requires user_id or household_id", {"event_type": event_type})

        return cls(
            event_type=event_type,
            user_id=str(user_id) if user_id else None,
            household_id=str(household_id) if household_id else None,
            reason=payload.get("reason"),
        )


class PermissionEventHandler:
    """Applies role-change events to the permission cache."""

    def __init__(self, cache: PermissionCache, metrics: Optional[MetricsCollector] = None):
        self.cache = cache
        self.metrics = metrics
        self.logger = get_logger("permissions.events")

    async def handle(self, event: RoleChangeEvent) -> Dict[str, Any]:
        """Invalidate and recompute for one event.

        Returns a summary of the users touched. Errors propagate.
        """
        set_user_context(event.user_id, event.household_id)
        invalidated: List[str] = []
        recomputed: List[str] = []

        if event.event_type in MEMBERSHIP_TOPICS and event.household_id:
            # Other members' readable-user lists change too
            invalidated = await self.cache.invalidate_household(event.household_id)

        if event.user_id:
            await self.cache.recompute(event.user_id)
            recomputed.append(event.user_id)

        self.logger.info(
            "Processed role change",
            event_type=event.event_type,
            user_id=event.user_id,
            household_id=event.household_id,
            reason=event.reason,
            invalidated=len(invalidated),
        )
        return {"invalidated": invalidated, "recomputed": recomputed}

    async def handle_payload(self, event_type: str, payload: Any) -> bool:
        """Decode and handle one raw payload.

        Failures are logged and counted, never raised, so one bad event does
        not stop the consumer. Returns True when the event was applied.
        """
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = payload.decode("utf-8")
            if isinstance(payload, str):
                payload = json.loads(payload)

            event = RoleChangeEvent.from_payload(event_type, payload)
            await self.handle(event)

        except Exception as e:
            self.logger.error("Failed to process role change event", event_type=event_type, error=str(e))
            self._record(event_type, "error")
            return False
        finally:
            clear_context()

        self._record(event.event_type, "ok")
        return True

    def _record(self, event_type: str, status: str):
        if self.metrics:
            self.metrics.increment_counter("permission_events_total", event_type=event_type, status=status)
