#!/usr/bin/env python3
#
# meterbox/tasks/maintenance.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic maintenance tasks for database health."""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

_log = logging.getLogger(__name__)

__all__ = [
	"sqlite_maintenance",
	"sqlite_integrity_check",
]


LOCK_POLL_SEC = 0.05


@asynccontextmanager
async def _holding(lock: Optional[threading.Lock]) -> AsyncIterator[None]:
	"""Hold *lock* without blocking the event loop while waiting for it."""
	if lock is None:
		yield
		return
	while not lock.acquire(blocking=False):
		await asyncio.sleep(LOCK_POLL_SEC)
	try:
		yield
	finally:
		lock.release()


async def sqlite_maintenance(db_path: Path, *, write_lock: Optional[threading.Lock] = None) -> None:
	"""Periodic SQLite maintenance: WAL checkpoint, analyze, optimize.

	With *write_lock* given, runs while holding the store's writer lock, in
	turn with sampler ticks and retention.
	VACUUM is not run here (heavy I/O, run manually if needed).
	"""
	if not Path(db_path).exists():
		_log.warning("MAINTENANCE SQLite database not found at %s", db_path)
		return

	try:
		async with _holding(write_lock), aiosqlite.connect(db_path) as db:
			await db.execute("PRAGMA busy_timeout=30000")
			# TRUNCATE mode: checkpoints and truncates WAL file to 0 bytes
			await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
			await db.execute("ANALYZE")
			await db.execute("PRAGMA optimize")

			_log.info("MAINTENANCE SQLite maintenance completed")
	except Exception:
		_log.exception("MAINTENANCE SQLite maintenance failed")
		raise


async def sqlite_integrity_check(db_path: Path) -> bool:
	"""Run ``PRAGMA integrity_check``; logs CRITICAL on failure."""
	if not Path(db_path).exists():
		_log.warning("MAINTENANCE SQLite database not found at %s", db_path)
		return False

	try:
		async with aiosqlite.connect(db_path) as db:
			cursor = await db.execute("PRAGMA integrity_check")
			result = await cursor.fetchone()
	except Exception:
		_log.exception("MAINTENANCE SQLite integrity check error")
		raise

	if result and result[0] == "ok":
		_log.info("MAINTENANCE SQLite integrity check passed")
		return True
	failure_msg = result[0] if result else "unknown error"
	_log.critical("MAINTENANCE SQLite integrity check FAILED: %s", failure_msg)
	return False
