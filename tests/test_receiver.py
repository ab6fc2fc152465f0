"""Tests for StateReceiver."""

import json
from unittest.mock import MagicMock

import pytest

from crew_rtc.receiver import StateReceiver


def _message(timestamp, **fields):
    return json.dumps({"timestamp": timestamp, **fields})


@pytest.fixture
def receiver():
    return StateReceiver(clock=lambda: 1_000)


class TestHandleMessage:
    def test_records_count_latency_and_snapshot(self, receiver):
        snapshot = receiver.handle_message(_message(990, currentState="PLAYING"))

        assert snapshot.current_state == "PLAYING"
        assert receiver.record.received_count == 1
        assert receiver.record.latency_ms == 10
        assert receiver.record.last_snapshot is snapshot

    def test_callback_gets_snapshot_count_and_latency(self, receiver):
        callback = MagicMock()
        receiver.add_callback(callback)

        receiver.handle_message(_message(900))
        receiver.handle_message(_message(950))

        assert callback.call_count == 2
        snapshot, count, latency = callback.call_args.args
        assert snapshot.timestamp == 950
        assert count == 2
        assert latency == 50

    def test_invalid_message_is_dropped(self, receiver):
        callback = MagicMock()
        receiver.add_callback(callback)

        assert receiver.handle_message("{not json") is None
        assert receiver.handle_message(json.dumps({"no": "timestamp"})) is None

        callback.assert_not_called()
        assert receiver.record.received_count == 0
        assert receiver.record.last_snapshot is None

    def test_last_processed_wins_even_if_older(self, receiver):
        receiver.handle_message(_message(999))
        receiver.handle_message(_message(500))
        assert receiver.record.last_snapshot.timestamp == 500
        assert receiver.record.latency_ms == 500

    def test_latency_is_not_clamped(self):
        """A primary clock ahead of ours yields negative latency."""
        receiver = StateReceiver(clock=lambda: 1_000)
        receiver.handle_message(_message(1_200))
        assert receiver.record.latency_ms == -200

    def test_failing_callback_does_not_stop_others(self, receiver):
        bad = MagicMock(side_effect=RuntimeError("game crashed"))
        good = MagicMock()
        receiver.add_callback(bad)
        receiver.add_callback(good)

        assert receiver.handle_message(_message(1)) is not None
        good.assert_called_once()

    def test_remove_callback(self, receiver):
        callback = MagicMock()
        receiver.add_callback(callback)
        receiver.remove_callback(callback)
        receiver.remove_callback(callback)

        receiver.handle_message(_message(1))
        callback.assert_not_called()
