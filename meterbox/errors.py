#!/usr/bin/env python3
#
# meterbox/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Exception taxonomy for the accounting engine."""

from __future__ import annotations

__all__ = [
	"MeterBoxError",
	"CollectorUnavailable",
	"StoreWriteFailed",
	"InvalidQuotaConfig",
	"QueryRangeInvalid",
]


class MeterBoxError(Exception):
	"""Base class for all engine errors."""


class CollectorUnavailable(MeterBoxError):
	"""Upstream snapshot failed (unreachable service or malformed data).

	Retried on the next tick, never fatal.
	"""


class StoreWriteFailed(MeterBoxError):
	"""A store transaction was rolled back; the tick failed atomically."""


class InvalidQuotaConfig(MeterBoxError):
	"""Malformed quota period or limit for an identity."""


class QueryRangeInvalid(MeterBoxError):
	"""Rejected windowed read (start > end, negative window, bad bucket width)."""
