"""Tests for shared helpers."""

from datetime import datetime, timezone

import pytest

from imagevault.utils import RingBuffer, from_json, parse_datetime, to_json


class TestParseDatetime:
    @pytest.mark.parametrize(
        "value",
        [
            "2024-05-01T12:00:00Z",
            "2024-05-01T12:00:00+00:00",
            "2024-05-01 12:00:00",
            1714564800,
            1714564800000,
            datetime(2024, 5, 1, 12, 0),
        ],
    )
    def test_formats(self, value):
        assert parse_datetime(value) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "not a date", object()])
    def test_unparseable(self, value):
        assert parse_datetime(value) is None


class TestJson:
    def test_round_trip(self):
        assert from_json(to_json({"a": [1, 2]})) == {"a": [1, 2]}

    def test_passthrough_and_bad(self):
        assert from_json(["already", "decoded"]) == ["already", "decoded"]
        assert from_json("{broken") is None
        assert to_json(None) is None


class TestRingBuffer:
    def test_eviction_and_order(self):
        buffer = RingBuffer(3)
        for i in range(5):
            buffer.append(i)
        assert buffer.items() == [2, 3, 4]
        assert buffer.latest() == [4, 3, 2]
        assert buffer.latest(2) == [4, 3]
        assert len(buffer) == 3
        assert list(buffer) == [2, 3, 4]

    def test_clear(self):
        buffer = RingBuffer(2)
        buffer.append("x")
        buffer.clear()
        assert buffer.items() == []

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            RingBuffer(0)
