"""
Unit tests for warpgate_broker.events module.
"""

import logging

from warpgate_broker.events import ValueStream


class TestValueStream:
    """Tests for ValueStream."""

    def test_initial_value(self):
        assert ValueStream(False).value is False

    def test_publish_updates_value_and_notifies(self):
        stream = ValueStream(0)
        received = []
        stream.subscribe(received.append)
        stream.publish(1)
        stream.publish(2)
        assert received == [1, 2]
        assert stream.value == 2

    def test_unsubscribe(self):
        stream = ValueStream(0)
        received = []
        unsubscribe = stream.subscribe(received.append)
        stream.publish(1)
        unsubscribe()
        unsubscribe()
        stream.publish(2)
        assert received == [1]

    def test_failing_listener_does_not_block_others(self, caplog):
        stream = ValueStream(0)
        received = []

        def broken(value):
            raise RuntimeError("listener bug")

        stream.subscribe(broken)
        stream.subscribe(received.append)
        with caplog.at_level(logging.ERROR, logger="warpgate_broker.events"):
            stream.publish(5)
        assert received == [5]
        assert "listener bug" in caplog.text
