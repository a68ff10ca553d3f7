#!/usr/bin/env python3
#
# meterbox/db/sqlite_settings.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Engine settings persistence."""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import time
from typing import Any

from ..utils.config import (
	ENGINE_SETTING_FIELDS,
	ConfigValidationError,
	EngineSettings,
	coerce_setting,
)
from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Settings operations
# ---------------------------------------------------------------------------

def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
	"""Set a setting value."""
	now = int(time.time())
	with transaction(conn):
		conn.execute(
			"""
			INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
			ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
			""",
			(key, value, now),
		)


def _format_value(value: Any) -> str:
	if isinstance(value, bool):
		return "1" if value else "0"
	return str(value)


def load_engine_settings(conn: sqlite3.Connection) -> EngineSettings:
	"""Build an EngineSettings snapshot from stored values over the defaults.

	Unparseable or out-of-range stored values fall back to their default
	with a warning rather than preventing startup.
	"""
	defaults = EngineSettings()
	values: dict[str, Any] = {}
	rows = conn.execute("SELECT key, value FROM settings").fetchall()
	for row in rows:
		key = row["key"]
		if key not in ENGINE_SETTING_FIELDS:
			continue
		try:
			values[key] = coerce_setting(key, row["value"])
		except ConfigValidationError as exc:
			_log.warning("SETTINGS ignoring stored %s: %s", key, exc)

	settings = dataclasses.replace(defaults, **values)
	try:
		return settings.validate()
	except ConfigValidationError as exc:
		_log.warning("SETTINGS stored values invalid (%s), using defaults", exc)
		return defaults


def save_engine_settings(conn: sqlite3.Connection, settings: EngineSettings, keys: list[str] | None = None) -> None:
	"""Persist all (or the given) fields of *settings* in one transaction."""
	names = keys if keys is not None else list(ENGINE_SETTING_FIELDS)
	with transaction(conn, immediate=True):
		for name in names:
			set_setting(conn, name, _format_value(getattr(settings, name)))
