#!/usr/bin/env python3
#
# meterbox/core/normalizer.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Turn cumulative counter snapshots into per-interval deltas."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..collectors.base import RawCounters

__all__ = ["Delta", "normalize", "normalize_channel"]


@dataclass(frozen=True)
class Delta:
	"""Per-interval traffic for one identity."""
	uplink: int
	downlink: int
	uplink_reset: bool = False
	downlink_reset: bool = False

	@property
	def reset(self) -> bool:
		return self.uplink_reset or self.downlink_reset

	@property
	def total(self) -> int:
		return self.uplink + self.downlink


def normalize_channel(previous: int, current: int) -> tuple[int, bool]:
	"""Delta for one channel and whether the counter went backwards.

	A counter below its previous value means the upstream restarted; the
	whole current value counts as new traffic. Traffic between the last poll
	and the restart is lost (known approximation).
	"""
	if current >= previous:
		return current - previous, False
	return current, True


def normalize(previous: Optional[RawCounters], current: RawCounters) -> Delta:
	"""Compute deltas from the previous raw counters (None on first sight).

	The first observation only establishes the baseline and yields (0, 0).
	"""
	if current.uplink < 0 or current.downlink < 0:
		raise ValueError(f"negative raw counter: {current}")
	if previous is None:
		return Delta(0, 0)

	up, up_reset = normalize_channel(previous.uplink, current.uplink)
	down, down_reset = normalize_channel(previous.downlink, current.downlink)
	return Delta(up, down, uplink_reset=up_reset, downlink_reset=down_reset)
