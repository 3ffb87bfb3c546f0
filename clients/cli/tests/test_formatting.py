from datetime import datetime

from chat_client.formatting import format_contact_time, format_timestamp, parse_timestamp, tooltip

NOW = datetime(2024, 3, 10, 15, 30)


def test_parse_accepts_naive_and_rejects_garbage():
    assert parse_timestamp("2024-03-10T09:05:00") == datetime(2024, 3, 10, 9, 5)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None


def test_parse_converts_aware_values_to_local_time():
    parsed = parse_timestamp("2024-03-10T09:05:00Z")

    assert parsed.tzinfo is None
    assert parsed == datetime.fromisoformat("2024-03-10T09:05:00+00:00").astimezone().replace(tzinfo=None)


def test_format_timestamp_today_and_earlier():
    assert format_timestamp("2024-03-10T09:05:00", NOW) == "09:05"
    assert format_timestamp("2024-02-01T18:45:00", NOW) == "Feb 1, 18:45"
    assert format_timestamp(None, NOW) == ""


def test_format_contact_time_buckets():
    assert format_contact_time("2024-03-10T08:00:00", NOW) == "08:00"
    assert format_contact_time("2024-03-09T23:59:00", NOW) == "Yesterday"
    assert format_contact_time("2024-01-05T12:00:00", NOW) == "Jan 5"
    assert format_contact_time(None, NOW) == ""


def test_tooltip_adds_read_line_only_when_read():
    assert tooltip("2024-03-10T09:05:00", None, NOW) == "Sent: 09:05"
    assert tooltip("2024-03-10T09:05:00", "2024-03-10T09:07:00", NOW) == "Sent: 09:05\nRead: 09:07"
