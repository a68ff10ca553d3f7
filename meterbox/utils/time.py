#!/usr/bin/env python3
#
# meterbox/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timezone

SECONDS_PER_DAY = 86400


def from_epoch(ts: float) -> datetime:
	"""Convert epoch seconds to a UTC datetime."""
	return datetime.fromtimestamp(ts, tz=timezone.utc)


def day_of(ts: int) -> date:
	"""Return the UTC calendar day containing epoch second *ts*."""
	return from_epoch(ts).date()


def day_start(day: date) -> int:
	"""Epoch second of 00:00 UTC on *day*."""
	return calendar.timegm(day.timetuple())


def floor_to_day(ts: int) -> int:
	"""Align epoch second *ts* down to its UTC midnight."""
	return ts - (ts % SECONDS_PER_DAY)


def clamp_day(year: int, month: int, day: int) -> date:
	"""Build a date, clamping *day* to the month's length (31 -> 28/29/30)."""
	last = calendar.monthrange(year, month)[1]
	return date(year, month, min(day, last))
