#!/usr/bin/env python3
#
# meterbox/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic models for MeterBox."""

from .traffic import (
	AggregatedBucketPublic,
	IdentityUsagePublic,
	LastSeenPublic,
	PruneResultPublic,
	QuotaLimitPayload,
	QuotaStatePublic,
	RunRecordPublic,
	SeriesPointPublic,
	SettingsPublic,
	SettingsUpdate,
)

__all__ = [
	# Requests
	"QuotaLimitPayload",
	"SettingsUpdate",
	# Responses
	"AggregatedBucketPublic",
	"IdentityUsagePublic",
	"LastSeenPublic",
	"PruneResultPublic",
	"QuotaStatePublic",
	"RunRecordPublic",
	"SeriesPointPublic",
	"SettingsPublic",
]
