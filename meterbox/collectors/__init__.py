#!/usr/bin/env python3
#
# meterbox/collectors/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Collector adapters: one per traffic source."""

from .base import CollectorAdapter, RawCounters, run_command
from .proxy import ProxyStatsCollector, parse_stats_query
from .wireguard import WireGuardCollector, parse_wg_dump_counters

__all__ = [
	"CollectorAdapter",
	"RawCounters",
	"run_command",
	"ProxyStatsCollector",
	"parse_stats_query",
	"WireGuardCollector",
	"parse_wg_dump_counters",
]
