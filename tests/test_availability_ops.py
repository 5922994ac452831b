"""
Tests for the availability operations module.

These tests verify that fetched calendar data is turned into busy
intervals without any network I/O.
"""
import logging
import time
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import icalendar
import pytest
import recurring_ical_events

from calbridge.operations.availability_ops import BusyInterval
from calbridge.operations.availability_ops import CalendarObject
from calbridge.operations.availability_ops import expand_busy_intervals
from calbridge.operations.availability_ops import expand_calendar_objects
from calbridge.operations.availability_ops import is_valid_format
from calbridge.operations.availability_ops import object_extension
from calbridge.operations.availability_ops import OccurrenceCursor
from calbridge.operations.availability_ops import parse_instant
from calbridge.operations.availability_ops import resolve_timezone
from calbridge.operations.availability_ops import travel_duration_seconds
from calbridge.operations.timezone_ops import build_vtimezone

utc = timezone.utc

march_start = datetime(2023, 3, 1, tzinfo=utc)
march_end = datetime(2023, 3, 31, tzinfo=utc)


def calendar(*events, extra=""):
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Example Corp.//CalDAV Client//EN\r\n"
        + extra
        + "".join(
            "BEGIN:VEVENT\r\n" + "\r\n".join(x) + "\r\nEND:VEVENT\r\n" for x in events
        )
        + "END:VCALENDAR\r\n"
    )


single = [
    "UID:single-1@example.com",
    "DTSTAMP:20230601T120000Z",
    "DTSTART:20230615T150000Z",
    "DTEND:20230615T160000Z",
    "SUMMARY:Single",
]

weekly = [
    "UID:weekly-1@example.com",
    "DTSTAMP:20230201T120000Z",
    "DTSTART;TZID=America/New_York:20230301T090000",
    "DTEND;TZID=America/New_York:20230301T100000",
    "RRULE:FREQ=WEEKLY;COUNT=10",
    "SUMMARY:Weekly",
]


def starts(intervals):
    return [x.start for x in intervals]


class TestHelpers:
    def test_to_dict(self):
        interval = BusyInterval(
            datetime(2023, 6, 15, 15, tzinfo=utc), datetime(2023, 6, 15, 16, tzinfo=utc)
        )
        assert interval.to_dict() == {
            "start": "2023-06-15T15:00:00.000Z",
            "end": "2023-06-15T16:00:00.000Z",
        }

    def test_parse_instant(self):
        assert parse_instant("2023-06-15T15:00:00Z") == datetime(
            2023, 6, 15, 15, tzinfo=utc
        )
        assert parse_instant("2023-06-15T17:00:00+02:00") == datetime(
            2023, 6, 15, 15, tzinfo=utc
        )
        assert parse_instant(datetime(2023, 6, 15, 15)) == datetime(
            2023, 6, 15, 15, tzinfo=utc
        )
        with pytest.raises(TypeError):
            parse_instant(42)

    def test_formats(self):
        assert object_extension("https://dav.example.com/cal/abc.ics") == "ics"
        assert object_extension("https://dav.example.com/cal/abc") == "ics"
        assert object_extension("https://dav.example.com/cal.d/abc") == "ics"
        assert object_extension("https://dav.example.com/cal/abc.eml") == "eml"
        assert is_valid_format("/cal/abc.ics")
        assert is_valid_format("/cal/abc.eml")
        assert not is_valid_format("/cal/abc.vcf")

    def test_travel_duration(self):
        def event(value):
            component = icalendar.Event()
            if value is not None:
                component.add("X-APPLE-TRAVEL-DURATION", value)
            return component

        assert travel_duration_seconds(event(None)) == 0
        assert travel_duration_seconds(event("PT30M")) == 1800
        assert travel_duration_seconds(event("PT1H15M")) == 4500
        assert travel_duration_seconds(event("bogus")) == 0
        assert travel_duration_seconds(event("-PT30M")) == 0


class TestResolveTimezone:
    def parse(self, *lines, extra=""):
        cal = icalendar.Calendar.from_ical(calendar(list(lines), extra=extra))
        return cal.walk("VEVENT")[0], cal

    def test_dtstart_tzid_first(self):
        vevent, cal = self.parse(
            "UID:a",
            "DTSTART;TZID=Asia/Tokyo:20230615T100000",
            "TZID:Europe/Oslo",
        )
        assert resolve_timezone(vevent, cal, "Europe/London") == "Asia/Tokyo"

    def test_vevent_tzid(self):
        vevent, cal = self.parse("UID:a", "DTSTART:20230615T100000", "TZID:Europe/Oslo")
        assert resolve_timezone(vevent, cal, "Europe/London") == "Europe/Oslo"

    def test_utc(self):
        vevent, cal = self.parse("UID:a", "DTSTART:20230615T100000Z")
        assert resolve_timezone(vevent, cal, "Europe/London") == "UTC"

    def test_vtimezone(self):
        vtimezone = build_vtimezone("Europe/Berlin", datetime(2023, 6, 15)).to_ical()
        vevent, cal = self.parse("UID:a", "DTSTART:20230615T100000", extra=vtimezone)
        assert resolve_timezone(vevent, cal, "Europe/London") == "Europe/Berlin"

    def test_default(self):
        vevent, cal = self.parse("UID:a", "DTSTART;VALUE=DATE:20230615")
        assert resolve_timezone(vevent, cal, "Europe/London") == "Europe/London"


class TestSingleEvents:
    def test_single(self):
        intervals = expand_busy_intervals(calendar(single), march_start, march_end)
        assert intervals == [
            BusyInterval(
                datetime(2023, 6, 15, 15, tzinfo=utc),
                datetime(2023, 6, 15, 16, tzinfo=utc),
            )
        ]

    def test_iso_window(self):
        assert (
            len(
                expand_busy_intervals(
                    calendar(single), "2023-06-01T00:00:00Z", "2023-07-01T00:00:00Z"
                )
            )
            == 1
        )

    def test_bytes(self):
        assert len(expand_busy_intervals(calendar(single).encode(), march_start, march_end)) == 1

    def test_transparent(self):
        event = single + ["TRANSP:TRANSPARENT"]
        assert expand_busy_intervals(calendar(event), march_start, march_end) == []

    def test_duration(self):
        event = [x for x in single if not x.startswith("DTEND")] + ["DURATION:PT45M"]
        (interval,) = expand_busy_intervals(calendar(event), march_start, march_end)
        assert interval.end - interval.start == timedelta(minutes=45)

    def test_travel_time(self):
        event = single + ["X-APPLE-TRAVEL-DURATION;VALUE=DURATION:PT30M"]
        (interval,) = expand_busy_intervals(calendar(event), march_start, march_end)
        assert interval.start == datetime(2023, 6, 15, 14, 30, tzinfo=utc)
        assert interval.end == datetime(2023, 6, 15, 16, tzinfo=utc)

    def test_bogus_travel_time(self):
        event = single + ["X-APPLE-TRAVEL-DURATION:bogus"]
        (interval,) = expand_busy_intervals(calendar(event), march_start, march_end)
        assert interval.start == datetime(2023, 6, 15, 15, tzinfo=utc)

    def test_all_day_in_default_timezone(self):
        event = [
            "UID:allday@example.com",
            "DTSTART;VALUE=DATE:20230615",
            "DTEND;VALUE=DATE:20230616",
        ]
        (interval,) = expand_busy_intervals(
            calendar(event), march_start, march_end, default_timezone="America/Chicago"
        )
        assert interval.start == datetime(2023, 6, 15, 5, tzinfo=utc)
        assert interval.end == datetime(2023, 6, 16, 5, tzinfo=utc)

    def test_all_day_without_end(self):
        event = ["UID:allday@example.com", "DTSTART;VALUE=DATE:20230615"]
        (interval,) = expand_busy_intervals(calendar(event), march_start, march_end)
        ## Europe/London is on BST in June
        assert interval.start == datetime(2023, 6, 14, 23, tzinfo=utc)
        assert interval.end - interval.start == timedelta(days=1)

    def test_floating_time_in_vtimezone(self):
        vtimezone = build_vtimezone("Europe/Berlin", datetime(2023, 6, 15)).to_ical()
        event = [
            "UID:floating@example.com",
            "DTSTART:20230615T100000",
            "DTEND:20230615T110000",
        ]
        (interval,) = expand_busy_intervals(
            calendar(event, extra=vtimezone), march_start, march_end
        )
        assert interval.start == datetime(2023, 6, 15, 8, tzinfo=utc)

    def test_unknown_default_timezone_skips_event(self, caplog):
        event = ["UID:allday@example.com", "DTSTART;VALUE=DATE:20230615"]
        with caplog.at_level(logging.WARNING, logger="calbridge"):
            assert (
                expand_busy_intervals(
                    calendar(event), march_start, march_end, default_timezone="Nowhere/Land"
                )
                == []
            )
        assert "allday@example.com" in caplog.text


class TestRecurringEvents:
    def test_weekly_across_dst(self):
        intervals = expand_busy_intervals(calendar(weekly), march_start, march_end)
        ## 09:00 in New York is 14:00 UTC before March 12, 13:00 UTC after
        assert starts(intervals) == [
            datetime(2023, 3, 1, 14, tzinfo=utc),
            datetime(2023, 3, 8, 14, tzinfo=utc),
            datetime(2023, 3, 15, 13, tzinfo=utc),
            datetime(2023, 3, 22, 13, tzinfo=utc),
            datetime(2023, 3, 29, 13, tzinfo=utc),
        ]
        for interval in intervals:
            assert interval.end - interval.start == timedelta(hours=1)

    def test_same_as_recurring_ical_events(self):
        cal = icalendar.Calendar.from_ical(calendar(weekly))
        expected = sorted(
            x["DTSTART"].dt.astimezone(utc)
            for x in recurring_ical_events.of(cal).between(march_start, march_end)
        )
        assert starts(expand_busy_intervals(cal, march_start, march_end)) == expected

    def test_window_is_exclusive(self):
        intervals = expand_busy_intervals(
            calendar(weekly),
            datetime(2023, 3, 8, 14, tzinfo=utc),
            datetime(2023, 3, 22, 13, tzinfo=utc),
        )
        assert starts(intervals) == [datetime(2023, 3, 15, 13, tzinfo=utc)]

    def test_window_in_the_middle(self):
        intervals = expand_busy_intervals(
            calendar(weekly),
            datetime(2023, 3, 20, tzinfo=utc),
            datetime(2023, 4, 20, tzinfo=utc),
        )
        ## COUNT=10 ends with May 3
        assert len(intervals) == 5
        assert intervals[0].start == datetime(2023, 3, 22, 13, tzinfo=utc)

    def test_exdate(self):
        event = weekly + ["EXDATE;TZID=America/New_York:20230315T090000"]
        intervals = expand_busy_intervals(calendar(event), march_start, march_end)
        assert len(intervals) == 4
        assert datetime(2023, 3, 15, 13, tzinfo=utc) not in starts(intervals)

    def test_rdate(self):
        event = weekly + ["RDATE;TZID=America/New_York:20230317T120000"]
        intervals = expand_busy_intervals(calendar(event), march_start, march_end)
        assert datetime(2023, 3, 17, 16, tzinfo=utc) in starts(intervals)
        assert len(intervals) == 6

    def test_until(self):
        event = [x if not x.startswith("RRULE") else "RRULE:FREQ=WEEKLY;UNTIL=20230315T130000Z" for x in weekly]
        intervals = expand_busy_intervals(calendar(event), march_start, march_end)
        assert starts(intervals)[-1] == datetime(2023, 3, 15, 13, tzinfo=utc)
        assert len(intervals) == 3

    def test_moved_occurrence(self):
        moved = [
            "UID:weekly-1@example.com",
            "DTSTAMP:20230201T120000Z",
            "RECURRENCE-ID;TZID=America/New_York:20230308T090000",
            "DTSTART;TZID=America/New_York:20230308T150000",
            "DTEND;TZID=America/New_York:20230308T160000",
            "SUMMARY:Weekly, moved",
        ]
        intervals = expand_busy_intervals(calendar(weekly, moved), march_start, march_end)
        assert len(intervals) == 5
        assert datetime(2023, 3, 8, 14, tzinfo=utc) not in starts(intervals)
        assert datetime(2023, 3, 8, 20, tzinfo=utc) in starts(intervals)

    @pytest.mark.parametrize("freq", ["HOURLY", "MINUTELY", "SECONDLY"])
    def test_sub_daily_rejected(self, freq, caplog):
        event = [x if not x.startswith("RRULE") else f"RRULE:FREQ={freq}" for x in weekly]
        with caplog.at_level(logging.WARNING, logger="calbridge"):
            assert expand_busy_intervals(calendar(event), march_start, march_end) == []
        assert f"Won't handle [{freq}]" in caplog.text

    def test_transparent_recurring(self):
        event = weekly + ["TRANSP:TRANSPARENT"]
        assert expand_busy_intervals(calendar(event), march_start, march_end) == []

    def test_iteration_cap(self, caplog):
        daily = [
            "UID:daily@example.com",
            "DTSTART:20200101T090000Z",
            "DTEND:20200101T093000Z",
            "RRULE:FREQ=DAILY",
        ]
        window = (datetime(2023, 1, 1, tzinfo=utc), datetime(2025, 1, 1, tzinfo=utc))
        with caplog.at_level(logging.WARNING, logger="calbridge"):
            intervals = expand_busy_intervals(calendar(daily), *window)
        assert len(intervals) == 365
        assert intervals[0].start == datetime(2023, 1, 1, 9, tzinfo=utc)
        assert intervals[-1].start == datetime(2023, 12, 31, 9, tzinfo=utc)
        assert "daily@example.com" in caplog.text
        assert (
            len(expand_busy_intervals(calendar(daily), *window, max_iterations=10))
            == 10
        )

    def test_rule_that_never_matches(self, caplog):
        impossible = [
            "UID:impossible@example.com",
            "DTSTART:20230101T090000Z",
            "DTEND:20230101T100000Z",
            "RRULE:FREQ=DAILY;BYMONTH=2;BYMONTHDAY=30",
        ]
        before = time.monotonic()
        with caplog.at_level(logging.WARNING, logger="calbridge"):
            intervals = expand_busy_intervals(
                calendar(impossible), march_start, march_end
            )
        assert intervals == []
        assert time.monotonic() - before < 2
        assert "Gave up" not in caplog.text

    def test_count_rule_is_bounded(self):
        event = [
            x if not x.startswith("RRULE") else "RRULE:FREQ=DAILY;COUNT=100000"
            for x in weekly
        ]
        intervals = expand_busy_intervals(calendar(event), march_start, march_end)
        assert starts(intervals)[0] == datetime(2023, 3, 1, 14, tzinfo=utc)
        assert starts(intervals)[-1] == datetime(2023, 3, 30, 13, tzinfo=utc)
        assert len(intervals) == 30

    def test_vtimezone_with_custom_tzid(self):
        ## Outlook style zone names are not in the IANA database
        vtimezone = build_vtimezone(
            "America/New_York", datetime(2023, 3, 1)
        ).to_ical().replace("America/New_York", "Eastern Standard Time")
        event = [x.replace("America/New_York", "Eastern Standard Time") for x in weekly]
        intervals = expand_busy_intervals(
            calendar(event, extra=vtimezone), march_start, march_end
        )
        assert starts(intervals)[:3] == [
            datetime(2023, 3, 1, 14, tzinfo=utc),
            datetime(2023, 3, 8, 14, tzinfo=utc),
            datetime(2023, 3, 15, 13, tzinfo=utc),
        ]


class TestOccurrenceCursor:
    def test_restartable(self):
        cal = icalendar.Calendar.from_ical(calendar(weekly))
        vevent = cal.walk("VEVENT")[0]
        start = vevent["DTSTART"].dt
        cursor = OccurrenceCursor.from_component(
            vevent, start, timedelta(hours=1), march_start, march_end
        )
        first = [x.occurrence.start for x in cursor]
        second = [x.occurrence.start for x in cursor]
        assert first == second
        ## the rules end a day after the window
        assert len(first) == 5
        assert not cursor.capped

    def test_capped(self):
        cal = icalendar.Calendar.from_ical(calendar(weekly))
        vevent = cal.walk("VEVENT")[0]
        cursor = OccurrenceCursor.from_component(
            vevent,
            vevent["DTSTART"].dt,
            timedelta(hours=1),
            march_start,
            march_end,
            max_iterations=2,
        )
        assert len(list(cursor)) == 2
        assert cursor.capped
        assert all(x.ok for x in cursor)


class TestMalformedData:
    def test_garbage(self, caplog):
        with caplog.at_level(logging.WARNING, logger="calbridge"):
            assert expand_busy_intervals("garbage", march_start, march_end) == []
            assert expand_busy_intervals("", march_start, march_end) == []
        assert "Error parsing calendar object" in caplog.text

    def test_broken_event_skipped(self):
        broken = [
            "UID:broken@example.com",
            "DTSTART:not-a-date",
            "DTEND:20230615T160000Z",
        ]
        intervals = expand_busy_intervals(
            calendar(broken, single), march_start, march_end
        )
        assert starts(intervals) == [datetime(2023, 6, 15, 15, tzinfo=utc)]

    def test_duplicated_properties(self):
        ## iCloud duplicates DTSTAMP, Zimbra sends DTEND and DURATION
        event = single + ["DTSTAMP:20230601T120000Z", "DURATION:PT3H"]
        (interval,) = expand_busy_intervals(calendar(event), march_start, march_end)
        assert interval.end == datetime(2023, 6, 15, 16, tzinfo=utc)


class TestExpandCalendarObjects:
    def test_batch(self):
        objects = [
            CalendarObject("/cal/single.ics", '"1"', calendar(single)),
            CalendarObject("/cal/weekly.eml", '"2"', calendar(weekly)),
            CalendarObject("/cal/contact.vcf", '"3"', calendar(single)),
            CalendarObject("/cal/empty.ics", '"4"', None),
            CalendarObject("/cal/garbage.ics", '"5"', "garbage"),
            None,
        ]
        intervals = expand_calendar_objects(objects, march_start, march_end)
        assert len(intervals) == 6
