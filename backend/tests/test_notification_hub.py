"""
Unit Tests for the Notification Hub

Run with: pytest tests/test_notification_hub.py -v
"""

import pytest

from services.notification_hub import EMAIL_STATUS_EVENT, NotificationHub, user_group


class TestNotificationHub:

    def test_user_group_name(self):
        assert user_group("42") == "user_42"
        assert user_group(None) is None
        assert user_group("") is None

    def test_publish_without_subscribers(self):
        assert NotificationHub().publish("user_1", EMAIL_STATUS_EVENT, {}) == 0

    @pytest.mark.asyncio
    async def test_subscriber_receives_group_events_only(self):
        hub = NotificationHub()
        async with hub.subscribe("user_1") as mine, hub.subscribe("user_2") as theirs:
            delivered = hub.publish("user_1", EMAIL_STATUS_EVENT, {"emailJobId": "job-1", "status": "sent"})

            assert delivered == 1
            notification = mine.get_nowait()
            assert notification.payload["status"] == "sent"
            assert theirs.empty()

    @pytest.mark.asyncio
    async def test_every_subscriber_of_a_group_receives(self):
        hub = NotificationHub()
        async with hub.subscribe("user_1") as first, hub.subscribe("user_1") as second:
            assert hub.publish("user_1", EMAIL_STATUS_EVENT, {"status": "opened"}) == 2
            assert first.get_nowait().event == EMAIL_STATUS_EVENT
            assert second.get_nowait().event == EMAIL_STATUS_EVENT

    @pytest.mark.asyncio
    async def test_full_subscriber_buffer_drops_event(self):
        hub = NotificationHub(queue_size=1)
        async with hub.subscribe("user_1") as queue:
            assert hub.publish("user_1", EMAIL_STATUS_EVENT, {"n": 1}) == 1
            assert hub.publish("user_1", EMAIL_STATUS_EVENT, {"n": 2}) == 0
            assert queue.get_nowait().payload == {"n": 1}

    @pytest.mark.asyncio
    async def test_unsubscribe_on_exit(self):
        hub = NotificationHub()
        async with hub.subscribe("user_1"):
            assert hub.subscriber_count("user_1") == 1
        assert hub.subscriber_count("user_1") == 0

    @pytest.mark.asyncio
    async def test_notification_serializes(self):
        hub = NotificationHub()
        async with hub.subscribe("user_1") as queue:
            hub.publish("user_1", EMAIL_STATUS_EVENT, {"emailJobId": "job-1"})
            data = queue.get_nowait().to_dict()

        assert data["event"] == EMAIL_STATUS_EVENT
        assert data["group"] == "user_1"
        assert data["payload"] == {"emailJobId": "job-1"}
        assert "published_at" in data
