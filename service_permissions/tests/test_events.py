"""
Unit tests for role-change event handling.
"""

import json
from collections import namedtuple

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from structlog.contextvars import get_contextvars

from shared.errors import ExternalServiceError, ValidationError
from shared.metrics import MetricsCollector
from service_permissions.app.events.consumer import EventConsumer
from service_permissions.app.events.handlers import (
    MEMBER_ADDED, MEMBER_REMOVED, MEMBER_ROLE_CHANGED, MANAGED_RELATIONSHIP_CHANGED,
    PERMISSIONS_RECOMPUTE, PermissionEventHandler, RoleChangeEvent,
)
from service_permissions.app.rules.engine import RuleEngine


TopicPartition = namedtuple("TopicPartition", ["topic", "partition"])
ConsumerRecord = namedtuple("ConsumerRecord", ["topic", "partition", "offset", "value"])


class TestRoleChangeEvent:
    """Test cases for decoding event payloads."""

    def test_snake_and_camel_case(self):
        """Test both key styles are accepted."""
        event = RoleChangeEvent.from_payload(MEMBER_ADDED, {"userId": "u1", "householdId": "h1"})
        assert event.user_id == "u1"
        assert event.household_id == "h1"

        event = RoleChangeEvent.from_payload(PERMISSIONS_RECOMPUTE, {"user_id": "u1", "reason": "manual"})
        assert event.reason == "manual"

    def test_dotted_role_change_topic(self):
        """Test the older role-change topic name maps to the current one."""
        event = RoleChangeEvent.from_payload("household.member.role.changed", {"user_id": "u1"})
        assert event.event_type == MEMBER_ROLE_CHANGED

    @pytest.mark.parametrize("event_type,payload", [
        (PERMISSIONS_RECOMPUTE, {"household_id": "h1"}),
        (MANAGED_RELATIONSHIP_CHANGED, {}),
        (MEMBER_REMOVED, {}),
        ("household.renamed", {"household_id": "h1"}),
        (MEMBER_ADDED, ["u1"]),
    ])
    def test_invalid_payloads(self, event_type, payload):
        """Test missing identifiers and unknown topics are rejected."""
        with pytest.raises(ValidationError):
            RoleChangeEvent.from_payload(event_type, payload)


class TestPermissionEventHandler:
    """Test cases for PermissionEventHandler."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("permissions")

    @pytest.fixture
    def handler(self, permission_cache, metrics):
        return PermissionEventHandler(permission_cache, metrics)

    @pytest.mark.asyncio
    async def test_member_added_refreshes_household(self, handler, permission_cache, role_store):
        """Test adding a member updates the new member and existing members."""
        await permission_cache.get_or_compute("m1")
        role_store.add_member("H1", "newbie", "member")

        summary = await handler.handle(RoleChangeEvent(MEMBER_ADDED, "newbie", "H1"))

        assert "m1" in summary["invalidated"]
        assert summary["recomputed"] == ["newbie"]
        engine = RuleEngine(await permission_cache.get_or_compute("m1"))
        assert engine.can("read", "User", {"id": "newbie"})
        assert "newbie" in role_store.packed

    @pytest.mark.asyncio
    async def test_member_removed_recomputes_removed_user(self, handler, permission_cache, role_store):
        """Test a removed member loses access even though no longer listed."""
        await permission_cache.get_or_compute("u1")
        role_store.remove_member("H1", "u1")

        summary = await handler.handle(RoleChangeEvent(MEMBER_REMOVED, "u1", "H1"))

        assert "u1" not in summary["invalidated"]
        engine = RuleEngine(await permission_cache.get_or_compute("u1"))
        assert not engine.can("read", "Household", {"id": "H1"})

    @pytest.mark.asyncio
    async def test_recompute_event(self, handler, permission_cache):
        """Test recompute events call recompute on the cache."""
        with patch.object(permission_cache, "recompute", new_callable=AsyncMock) as mock_recompute:
            await handler.handle(RoleChangeEvent(PERMISSIONS_RECOMPUTE, "u1"))
        mock_recompute.assert_awaited_once_with("u1")

    @pytest.mark.asyncio
    async def test_handle_payload_decodes_json(self, handler, metrics):
        """Test raw JSON payloads are decoded and counted."""
        applied = await handler.handle_payload(
            MANAGED_RELATIONSHIP_CHANGED, json.dumps({"userId": "m1"}).encode()
        )
        assert applied is True
        assert metrics.registry.get_sample_value(
            "permission_events_total",
            {"event_type": MANAGED_RELATIONSHIP_CHANGED, "status": "ok"},
        ) == 1

    @pytest.mark.asyncio
    async def test_handle_payload_swallows_failures(self, handler, role_store, metrics):
        """Test a failing event is logged and counted, not raised."""
        role_store.fail_with = ConnectionError("down")

        applied = await handler.handle_payload(MEMBER_ADDED, b'{"household_id": "H1"}')
        assert applied is False
        assert await handler.handle_payload(MEMBER_ADDED, b"not json") is False
        assert metrics.registry.get_sample_value(
            "permission_events_total", {"event_type": MEMBER_ADDED, "status": "error"},
        ) == 2

    @pytest.mark.asyncio
    async def test_handle_payload_clears_log_context(self, handler):
        """Test one event's user does not leak into the next event's log lines."""
        await handler.handle_payload(MANAGED_RELATIONSHIP_CHANGED, {"user_id": "m1"})
        assert get_contextvars() == {}

        await handler.handle_payload(MEMBER_ROLE_CHANGED, {"household_id": "H1"})
        assert "user_id" not in get_contextvars()


class TestEventConsumer:
    """Test cases for EventConsumer."""

    @pytest.fixture
    def handler(self):
        handler = MagicMock()
        handler.handle_payload = AsyncMock(return_value=True)
        return handler

    @pytest.fixture
    def consumer(self, handler):
        return EventConsumer("localhost:9092", "permissions", handler)

    @pytest.mark.asyncio
    async def test_start_subscribes_to_topics(self, consumer):
        """Test start creates a consumer subscribed to the event topics."""
        with patch("service_permissions.app.events.consumer.kafka.KafkaConsumer") as mock_consumer_cls:
            await consumer.start(start_loop=False)

        mock_consumer_cls.return_value.subscribe.assert_called_once_with(consumer.topics)
        assert MEMBER_ADDED in consumer.topics
        assert "household.member.role.changed" in consumer.topics
        assert consumer.is_running()

        await consumer.stop()
        assert not consumer.is_running()
        mock_consumer_cls.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_failure(self, consumer):
        """Test broker failures raise ExternalServiceError."""
        with patch("service_permissions.app.events.consumer.kafka.KafkaConsumer", side_effect=RuntimeError("no brokers")):
            with pytest.raises(ExternalServiceError):
                await consumer.start()

    @pytest.mark.asyncio
    async def test_process_batch(self, consumer, handler):
        """Test each record is dispatched in order with its topic."""
        batch = {
            TopicPartition(MEMBER_ADDED, 0): [
                ConsumerRecord(MEMBER_ADDED, 0, 10, b'{"user_id": "u1"}'),
                ConsumerRecord(MEMBER_ADDED, 0, 11, b'{"user_id": "u2"}'),
            ],
            TopicPartition(PERMISSIONS_RECOMPUTE, 0): [
                ConsumerRecord(PERMISSIONS_RECOMPUTE, 0, 3, b'{"user_id": "u3"}'),
            ],
        }
        handler.handle_payload.side_effect = [True, False, True]

        applied = await consumer.process_batch(batch)

        assert applied == 2
        assert [call.args[0] for call in handler.handle_payload.await_args_list] == [
            MEMBER_ADDED, MEMBER_ADDED, PERMISSIONS_RECOMPUTE,
        ]
