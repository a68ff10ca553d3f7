#!/usr/bin/env python3
#
# meterbox/collectors/proxy.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-user proxy counters from the V2Ray-compatible stats API."""

from __future__ import annotations

import json
import logging

from ..errors import CollectorUnavailable
from ..utils.config import DEFAULT_PROXY_API
from .base import RawCounters, run_command

_log = logging.getLogger(__name__)

__all__ = ["ProxyStatsCollector", "parse_stats_query"]

_USER_PREFIX = "user"
_TRAFFIC = "traffic"


def parse_stats_query(payload: str) -> dict[str, RawCounters]:
	"""Parse `statsquery` JSON into counters per user.

	Expected shape::

		{"stat": [{"name": "user>>>alice>>>traffic>>>uplink", "value": 1024}, ...]}

	Entries that are not per-user traffic counters are ignored; a missing
	``value`` means zero (the API omits zero values).
	"""
	try:
		data = json.loads(payload) if payload.strip() else {}
	except json.JSONDecodeError as exc:
		raise CollectorUnavailable(f"stats API returned invalid JSON: {exc}") from exc
	if not isinstance(data, dict):
		raise CollectorUnavailable("stats API returned unexpected JSON document")

	stats = data.get("stat") or []
	if not isinstance(stats, list):
		raise CollectorUnavailable("stats API 'stat' field is not a list")

	uplinks: dict[str, int] = {}
	downlinks: dict[str, int] = {}
	for entry in stats:
		if not isinstance(entry, dict):
			continue
		parts = str(entry.get("name", "")).split(">>>")
		if len(parts) != 4 or parts[0] != _USER_PREFIX or parts[2] != _TRAFFIC:
			continue
		name, direction = parts[1], parts[3]
		try:
			value = int(entry.get("value") or 0)
		except (TypeError, ValueError) as exc:
			raise CollectorUnavailable(f"non-numeric counter for {name!r}") from exc
		if value < 0:
			raise CollectorUnavailable(f"negative counter for {name!r}")
		if direction == "uplink":
			uplinks[name] = value
		elif direction == "downlink":
			downlinks[name] = value

	return {
		name: RawCounters(uplink=uplinks.get(name, 0), downlink=downlinks.get(name, 0))
		for name in sorted(set(uplinks) | set(downlinks))
	}


class ProxyStatsCollector:
	"""Collector adapter for the proxy daemon's stats API.

	Queries without resetting counters, so the daemon's counters stay
	cumulative and deltas are derived by the normalizer.
	"""

	source = "proxy"

	def __init__(
		self,
		api_address: str = DEFAULT_PROXY_API,
		*,
		command: tuple[str, ...] = (),
		timeout: float = 5.0,
	) -> None:
		self.command = tuple(command) or (
			"xray", "api", "statsquery",
			f"--server={api_address}",
			"-pattern", f"{_USER_PREFIX}>>>",
		)
		self.timeout = timeout

	async def snapshot(self) -> dict[str, RawCounters]:
		stdout = await run_command(*self.command, timeout=self.timeout)
		counters = parse_stats_query(stdout)
		_log.debug("COLLECTOR proxy users=%d", len(counters))
		return counters
