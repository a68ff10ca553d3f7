#!/usr/bin/env python3
#
# meterbox/collectors/wireguard.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""WireGuard peer counters via `wg show all dump`."""

from __future__ import annotations

import logging

from ..errors import CollectorUnavailable
from ..utils.config import DEFAULT_WG_COMMAND
from .base import RawCounters, run_command

_log = logging.getLogger(__name__)

__all__ = ["WireGuardCollector", "parse_wg_dump_counters"]


def _parse_counter(value: str, line_no: int) -> int:
	try:
		parsed = int(value) if value else 0
	except ValueError as exc:
		raise CollectorUnavailable(f"wg dump line {line_no}: bad counter {value!r}") from exc
	if parsed < 0:
		raise CollectorUnavailable(f"wg dump line {line_no}: negative counter {parsed}")
	return parsed


def parse_wg_dump_counters(stdout: str) -> dict[str, RawCounters]:
	"""Parse `wg show all dump` into counters per peer public key.

	Handles both output formats:
	- Format A (9 cols): iface, pubkey, psk, endpoint, allowed-ips, handshake, rx, tx, keepalive
	- Format B (8 cols): pubkey, psk, endpoint, allowed-ips, handshake, rx, tx, keepalive

	Interface header lines (4-5 cols) are skipped. Uplink is what the server
	received from the peer (rx), downlink what it sent (tx). A peer present on
	several interfaces has its counters summed.
	"""
	peers: dict[str, RawCounters] = {}

	for line_no, line in enumerate(stdout.strip().splitlines(), start=1):
		if not line.strip():
			continue
		parts = line.split("\t")

		if len(parts) < 8:
			continue

		offset = 1 if len(parts) >= 9 else 0
		public_key = parts[offset]
		if not public_key:
			continue
		rx = _parse_counter(parts[offset + 5], line_no)
		tx = _parse_counter(parts[offset + 6], line_no)

		prev = peers.get(public_key)
		if prev is not None:
			rx += prev.uplink
			tx += prev.downlink
		peers[public_key] = RawCounters(uplink=rx, downlink=tx)

	return peers


class WireGuardCollector:
	"""Collector adapter for the WireGuard control interface."""

	source = "wireguard"

	def __init__(self, command: tuple[str, ...] = DEFAULT_WG_COMMAND, *, timeout: float = 5.0) -> None:
		self.command = tuple(command)
		self.timeout = timeout

	async def snapshot(self) -> dict[str, RawCounters]:
		stdout = await run_command(*self.command, timeout=self.timeout)
		if not stdout.strip():
			_log.debug("COLLECTOR wg dump returned empty output (no active interfaces?)")
			return {}
		return parse_wg_dump_counters(stdout)
