#!/usr/bin/env python3
#
# meterbox/models/traffic.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Traffic accounting Pydantic models."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SettingsUpdate(BaseModel):
	"""Partial engine settings update; omitted fields stay unchanged."""
	model_config = ConfigDict(extra="forbid")

	proxy_interval_sec: Optional[int] = Field(None, ge=1, le=86400)
	wireguard_interval_sec: Optional[int] = Field(None, ge=1, le=86400)
	retention_interval_sec: Optional[int] = Field(None, ge=60, le=7 * 86400)
	retention_enabled: Optional[bool] = None
	retention_days: Optional[int] = Field(None, ge=1, le=3650)
	aggregation_enabled: Optional[bool] = None
	aggregation_days: Optional[int] = Field(None, ge=1, le=3650)
	prune_buckets: Optional[bool] = None
	active_threshold_bytes: Optional[int] = Field(None, ge=0)
	proxy_paused: Optional[bool] = None
	wireguard_paused: Optional[bool] = None
	run_history_limit: Optional[int] = Field(None, ge=1, le=10000)
	collector_timeout_sec: Optional[float] = Field(None, gt=0, le=300)


class SettingsPublic(BaseModel):
	"""Current engine settings snapshot."""
	model_config = ConfigDict(from_attributes=True)

	proxy_interval_sec: int
	wireguard_interval_sec: int
	retention_interval_sec: int
	retention_enabled: bool
	retention_days: int
	aggregation_enabled: bool
	aggregation_days: int
	prune_buckets: bool
	active_threshold_bytes: int
	proxy_paused: bool
	wireguard_paused: bool
	run_history_limit: int
	collector_timeout_sec: float


class QuotaLimitPayload(BaseModel):
	"""Quota limit for one identity (0 bytes = unlimited)."""
	period_type: Literal["monthly", "total"] = "monthly"
	limit_bytes: int = Field(..., ge=0)
	reset_day: int = Field(default=1, ge=1, le=31)

	@field_validator("reset_day")
	@classmethod
	def reset_day_only_monthly(cls, v: int, info) -> int:
		if info.data.get("period_type") == "total" and v != 1:
			raise ValueError("reset_day only applies to monthly quotas")
		return v


class SeriesPointPublic(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	bucket: int
	uplink: int
	downlink: int
	samples: int


class IdentityUsagePublic(BaseModel):
	"""Per-identity totals over a window."""
	model_config = ConfigDict(from_attributes=True)

	source: str
	identity: str
	uplink: int
	downlink: int
	total: int
	exceeded: bool = False


class QuotaStatePublic(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	source: str
	identity: str
	period_type: Literal["monthly", "total"]
	reset_day: int
	limit_bytes: int
	consumed_bytes: int
	remaining_bytes: Optional[int] = None
	period_start: int
	updated_at: int
	exceeded: bool


class RunRecordPublic(BaseModel):
	"""One sampler or retention run."""
	model_config = ConfigDict(from_attributes=True)

	id: Optional[int] = None
	source: str
	ts: int
	inserted_count: int
	reset_count: int = 0
	duration_ms: int
	error: str = ""
	ok: bool


class PruneResultPublic(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	deleted_count: int
	cutoff: int
	buckets_deleted: int = 0


class LastSeenPublic(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	source: str
	identity: str
	ts: int


class AggregatedBucketPublic(BaseModel):
	"""Compacted daily totals for one identity."""
	model_config = ConfigDict(from_attributes=True)

	source: str
	identity: str
	day: str
	uplink_total: int
	downlink_total: int
	sample_count: int
