from warden.notifications import EventBus, EventKind


class TestSubscribe:
    def test_delivers_in_subscription_order(self):
        # Arrange
        bus = EventBus()
        calls = []
        bus.subscribe(lambda event: calls.append(("first", event.kind)))
        bus.subscribe(lambda event: calls.append(("second", event.kind)))

        # Act
        bus.publish(EventKind.CONFIG_SAVED)

        # Assert
        assert calls == [
            ("first", EventKind.CONFIG_SAVED),
            ("second", EventKind.CONFIG_SAVED),
        ]

    def test_kind_filter(self):
        # Arrange
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append, kinds=[EventKind.SERVER_STARTED])

        # Act
        bus.publish(EventKind.SERVER_STARTING, name="a")
        bus.publish(EventKind.SERVER_STARTED, name="a")

        # Assert
        assert [event.kind for event in seen] == [EventKind.SERVER_STARTED]
        assert seen[0].payload == {"name": "a"}

    def test_unsubscribe_is_idempotent(self):
        # Arrange
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)

        # Act
        unsubscribe()
        unsubscribe()
        bus.publish(EventKind.CONFIG_SAVED)

        # Assert
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self, caplog):
        # Arrange
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)

        # Act
        bus.publish(EventKind.TOKEN_REFRESHED, provider="acme")

        # Assert
        assert len(seen) == 1
        assert "boom" in caplog.text


class TestChannels:
    async def test_channel_receives_events_after_opening(self):
        # Arrange
        bus = EventBus()
        bus.publish(EventKind.CONFIG_SAVED)
        queue = bus.channel()

        # Act
        bus.publish(EventKind.OAUTH_SUCCESS, provider="acme")

        # Assert
        event = queue.get_nowait()
        assert event.kind == EventKind.OAUTH_SUCCESS
        assert queue.empty()

    async def test_closed_channel_stops_receiving(self):
        # Arrange
        bus = EventBus()
        queue = bus.channel()
        bus.close_channel(queue)

        # Act
        bus.publish(EventKind.CONFIG_SAVED)

        # Assert
        assert queue.empty()
