#!/usr/bin/env python3
#
# meterbox/api/traffic.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Traffic accounting API routes: reports, quotas, sampler control, settings."""

import logging
from typing import Any, Callable, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from starlette.concurrency import run_in_threadpool

from ..core.engine import Engine
from ..errors import InvalidQuotaConfig, MeterBoxError, QueryRangeInvalid
from ..models import (
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
from ..utils.config import ConfigValidationError
from ..utils.deps import get_engine
from ..utils.rate_limit import RATE_LIMIT_DEFAULT, RATE_LIMIT_HEAVY, limiter
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["traffic"])

__all__ = ["router"]

Source = Literal["proxy", "wireguard"]

# Resource limits
MAX_TOP_N = 1000
MAX_RUN_HISTORY = 1000


def _bad_request(exc: Exception) -> HTTPException:
	return HTTPException(status_code=400, detail=str(exc))


async def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
	"""Run a blocking engine call in the threadpool and map domain errors."""
	try:
		return await run_in_threadpool(fn, *args, **kwargs)
	except (QueryRangeInvalid, InvalidQuotaConfig, ConfigValidationError) as exc:
		raise _bad_request(exc) from exc
	except MeterBoxError as exc:
		_log.error("TRAFFIC %s failed: %s", getattr(fn, "__name__", fn), exc)
		raise HTTPException(status_code=500, detail="Internal error") from exc


def _require_sampler(engine: Engine, source: str) -> None:
	if source not in engine.samplers:
		raise HTTPException(status_code=404, detail=f"Source {source!r} is not configured")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@router.get("/series")
async def get_series(
	source: Source,
	start: int = Query(..., ge=0),
	end: int = Query(..., ge=0),
	bucket_width: int = Query(300, ge=1),
	engine: Engine = Depends(get_engine),
):
	"""Chart series summed into fixed-width buckets (empty buckets omitted)."""
	buckets = await _call(engine.reports.series, source, start, end, bucket_width)
	points = [SeriesPointPublic.model_validate(b).model_dump() for b in buckets]
	return ok_response(data=points, bucket_width=bucket_width)


@router.get("/totals")
async def get_totals(
	source: Source,
	identity: str = Query(..., min_length=1, max_length=256),
	start: int = Query(..., ge=0),
	end: int = Query(..., ge=0),
	engine: Engine = Depends(get_engine),
):
	usage = await _call(engine.reports.totals, source, identity, start, end)
	return ok_response(data=IdentityUsagePublic.model_validate(usage).model_dump())


@router.get("/top")
async def get_top_consumers(
	source: Source,
	start: int = Query(..., ge=0),
	end: int = Query(..., ge=0),
	n: int = Query(10, ge=0, le=MAX_TOP_N),
	engine: Engine = Depends(get_engine),
):
	"""Top consumers by total bytes; ties broken by identity."""
	rows = await _call(engine.reports.top_consumers, source, start, end, n)
	return ok_response(data=[IdentityUsagePublic.model_validate(r).model_dump() for r in rows])


@router.get("/active")
async def get_active(
	source: Source,
	window_seconds: int = Query(300, ge=0),
	threshold_bytes: Optional[int] = Query(None, ge=0),
	engine: Engine = Depends(get_engine),
):
	"""Identities whose recent traffic reaches the activity threshold."""
	rows = await _call(engine.reports.active_identities, source, window_seconds, threshold_bytes)
	threshold = threshold_bytes if threshold_bytes is not None else engine.settings.current().active_threshold_bytes
	return ok_response(
		data=[IdentityUsagePublic.model_validate(r).model_dump() for r in rows],
		window_seconds=window_seconds,
		threshold_bytes=threshold,
	)


@router.get("/usage")
async def get_usage_report(
	start: int = Query(..., ge=0),
	end: int = Query(..., ge=0),
	limit_bytes: Optional[int] = Query(None, ge=0),
	source: Optional[Source] = None,
	engine: Engine = Depends(get_engine),
):
	"""Per-identity usage; ``limit_bytes`` flags rows for this report only."""
	rows = await _call(engine.reports.usage_report, start, end, limit_bytes, source)
	return ok_response(data=[IdentityUsagePublic.model_validate(r).model_dump() for r in rows])


@router.get("/last-seen")
async def get_last_seen(
	source: Source,
	threshold_bytes: Optional[int] = Query(None, ge=0),
	engine: Engine = Depends(get_engine),
):
	"""Newest tick per identity with at least ``threshold_bytes`` of traffic."""
	rows = await _call(engine.reports.last_seen, source, threshold_bytes)
	return ok_response(data=[LastSeenPublic.model_validate(r).model_dump() for r in rows])


@router.get("/buckets")
async def get_aggregated_buckets(
	source: Optional[Source] = None,
	identity: Optional[str] = Query(None, min_length=1, max_length=256),
	engine: Engine = Depends(get_engine),
):
	"""Compacted daily history, oldest day first."""
	buckets = await _call(engine.store.list_buckets, source, identity)
	return ok_response(data=[AggregatedBucketPublic.model_validate(b).model_dump() for b in buckets])


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------

@router.get("/quota")
async def list_quota_states(
	source: Optional[Source] = None,
	engine: Engine = Depends(get_engine),
):
	states = await _call(engine.quota.list_states, source)
	return ok_response(data=[QuotaStatePublic.model_validate(s).model_dump() for s in states])


@router.get("/quota/{source}/{identity}")
async def get_quota_state(
	source: Source,
	identity: str,
	engine: Engine = Depends(get_engine),
):
	state = await _call(engine.quota.get_state, source, identity)
	limit = await _call(engine.quota.get_limit, source, identity)
	if state is None and limit is None:
		raise HTTPException(status_code=404, detail="No quota configured for this identity")
	return ok_response(
		data=QuotaStatePublic.model_validate(state).model_dump() if state else None,
		limit_bytes=limit.limit_bytes if limit else 0,
	)


@router.put("/quota/{source}/{identity}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def set_quota_limit(
	request: Request,
	source: Source,
	identity: str,
	payload: QuotaLimitPayload,
	engine: Engine = Depends(get_engine),
):
	"""Create or update the quota limit of an identity."""
	await _call(
		engine.quota.set_limit,
		source,
		identity,
		payload.period_type,
		payload.limit_bytes,
		payload.reset_day,
	)
	return ok_response(message="Quota limit saved", data=payload.model_dump())


@router.delete("/quota/{source}/{identity}")
async def delete_quota_limit(
	source: Source,
	identity: str,
	engine: Engine = Depends(get_engine),
):
	removed = await _call(engine.quota.remove_limit, source, identity)
	if not removed:
		raise HTTPException(status_code=404, detail="No quota configured for this identity")
	return ok_response(message="Quota limit removed")


# ---------------------------------------------------------------------------
# Sampler runs and control
# ---------------------------------------------------------------------------

@router.get("/runs")
async def get_run_history(
	source: Optional[Literal["proxy", "wireguard", "retention"]] = None,
	limit: Optional[int] = Query(None, ge=1, le=MAX_RUN_HISTORY),
	engine: Engine = Depends(get_engine),
):
	"""Recent run records, newest first."""
	runs = await _call(engine.run_history, source, limit)
	return ok_response(data=[RunRecordPublic.model_validate(r).model_dump() for r in runs])


@router.get("/status")
async def get_status(engine: Engine = Depends(get_engine)):
	status = await _call(engine.status)
	return ok_response(data=status)


@router.post("/run/{source}")
@limiter.limit(RATE_LIMIT_HEAVY)
async def run_now(
	request: Request,
	source: Source,
	engine: Engine = Depends(get_engine),
):
	"""Sample a source now; joins an in-flight tick instead of overlapping it."""
	_require_sampler(engine, source)
	record = await engine.run_now(source)
	_log.info(
		"TRAFFIC manual run source=%s inserted=%d error=%s request_id=%s",
		source, record.inserted_count, record.error or "-", getattr(request.state, "request_id", "-"),
	)
	return ok_response(data=RunRecordPublic.model_validate(record).model_dump())


@router.post("/pause/{source}")
async def pause_source(source: Source, engine: Engine = Depends(get_engine)):
	_require_sampler(engine, source)
	try:
		await engine.pause(source)
	except MeterBoxError as exc:
		_log.error("TRAFFIC pause %s failed: %s", source, exc)
		raise HTTPException(status_code=500, detail="Internal error") from exc
	return ok_response(message=f"{source} sampling paused")


@router.post("/resume/{source}")
async def resume_source(source: Source, engine: Engine = Depends(get_engine)):
	_require_sampler(engine, source)
	try:
		await engine.resume(source)
	except MeterBoxError as exc:
		_log.error("TRAFFIC resume %s failed: %s", source, exc)
		raise HTTPException(status_code=500, detail="Internal error") from exc
	return ok_response(message=f"{source} sampling resumed")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@router.post("/prune")
@limiter.limit(RATE_LIMIT_HEAVY)
async def prune_now(request: Request, engine: Engine = Depends(get_engine)):
	"""Delete samples older than the configured retention_days now."""
	try:
		result = await engine.prune_now()
	except MeterBoxError as exc:
		_log.error("TRAFFIC prune failed: %s", exc)
		raise HTTPException(status_code=500, detail="Internal error") from exc
	return ok_response(data=PruneResultPublic.model_validate(result).model_dump())


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@router.get("/settings")
async def get_settings(engine: Engine = Depends(get_engine)):
	return ok_response(data=SettingsPublic.model_validate(engine.settings.current()).model_dump())


@router.patch("/settings")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def update_settings(request: Request, payload: SettingsUpdate, engine: Engine = Depends(get_engine)):
	"""Apply a partial settings update; jobs pick it up without restart."""
	changes = payload.model_dump(exclude_none=True)
	if not changes:
		raise HTTPException(status_code=400, detail="No settings provided")
	try:
		updated = await engine.update_settings(**changes)
	except ConfigValidationError as exc:
		raise _bad_request(exc) from exc
	except MeterBoxError as exc:
		_log.error("TRAFFIC settings update failed: %s", exc)
		raise HTTPException(status_code=500, detail="Internal error") from exc
	return ok_response(message="Settings updated", data=SettingsPublic.model_validate(updated).model_dump())
