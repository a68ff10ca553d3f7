#!/usr/bin/env python3
#
# meterbox/collectors/base.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Collector adapter contract and subprocess helper."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from ..errors import CollectorUnavailable

_log = logging.getLogger(__name__)

__all__ = ["RawCounters", "CollectorAdapter", "run_command"]

_KILL_WAIT_TIMEOUT = 2.0


@dataclass(frozen=True)
class RawCounters:
	"""Cumulative byte counters reported by an upstream service."""
	uplink: int
	downlink: int


class CollectorAdapter(Protocol):
	"""Snapshot of current cumulative counters per identity.

	Implementations raise CollectorUnavailable when the upstream service is
	unreachable or returns malformed data.
	"""

	source: str

	async def snapshot(self) -> dict[str, RawCounters]:
		...


async def run_command(*cmd: str, timeout: float) -> str:
	"""Run *cmd* and return stdout; any failure raises CollectorUnavailable."""
	try:
		proc = await asyncio.create_subprocess_exec(
			*cmd,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
	except FileNotFoundError as exc:
		raise CollectorUnavailable(f"{cmd[0]!r} binary not found") from exc
	except OSError as exc:
		raise CollectorUnavailable(f"cannot execute {cmd[0]!r}: {exc}") from exc

	try:
		stdout_raw, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError as exc:
		proc.kill()
		# Secondary timeout to avoid zombie processes
		try:
			await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_TIMEOUT)
		except asyncio.TimeoutError:
			_log.warning("COLLECTOR %s did not exit after kill", cmd[0])
		raise CollectorUnavailable(f"{cmd[0]!r} timed out after {timeout:.1f}s") from exc

	if proc.returncode != 0:
		stderr = (stderr_raw or b"").decode("utf-8", errors="replace").strip()
		raise CollectorUnavailable(f"{cmd[0]!r} exited with code={proc.returncode}: {stderr}")

	return (stdout_raw or b"").decode("utf-8", errors="replace")
