from datetime import datetime, time

import pytest

from delaywatch.carriers.base import (
    TrackingResult,
    format_location,
    parse_carrier_date,
    parse_carrier_datetime,
    parse_carrier_time,
)
from delaywatch.models import Carrier


@pytest.mark.parametrize("value, expected", [
    ("20260205", datetime(2026, 2, 5)),
    ("2/5/2026", datetime(2026, 2, 5)),
    ("02/05/2026", datetime(2026, 2, 5)),
    ("2026-02-05", datetime(2026, 2, 5)),
    ("2026-02-05T14:30:00Z", datetime(2026, 2, 5, 14, 30)),
    ("2026-02-05T09:30:00-05:00", datetime(2026, 2, 5, 14, 30)),
    ("February 5, 2026", datetime(2026, 2, 5)),
    ("Feb 5, 2026", datetime(2026, 2, 5)),
    ("20261305", None),
    ("next week", None),
    ("", None),
    (None, None),
])
def test_parse_carrier_date(value, expected):
    assert parse_carrier_date(value) == expected


@pytest.mark.parametrize("value, expected", [
    ("143000", time(14, 30)),
    ("14:30", time(14, 30)),
    ("2:15 pm", time(14, 15)),
    ("12:05 am", time(0, 5)),
    ("12:05 PM", time(12, 5)),
    ("256000", None),
    ("noon", None),
])
def test_parse_carrier_time(value, expected):
    assert parse_carrier_time(value) == expected


def test_datetime_without_time_is_midnight():
    assert parse_carrier_datetime("20260205", None) == datetime(2026, 2, 5)
    assert parse_carrier_datetime("20260205", "091500") == datetime(2026, 2, 5, 9, 15)
    assert parse_carrier_datetime(None, "091500") is None


def test_format_location():
    assert format_location("Louisville", "KY", "US") == "Louisville, KY, US"
    assert format_location(None, "KY", None) == "KY"
    assert format_location(None, None, None) is None


def test_empty_result():
    result = TrackingResult.empty("1Z999AA10123456784", Carrier.UPS)

    assert result.is_empty
    assert not TrackingResult("1Z999AA10123456784", Carrier.UPS, current_status="In Transit").is_empty
