#!/usr/bin/env python3
#
# meterbox/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .api import traffic as traffic_api
from .core.engine import Engine
from .db.sqlite_runtime import close_all_connections
from .utils.config import Config, get_config
from .utils.rate_limit import limiter
from .utils.request_id import RequestIDMiddleware

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"
_SHUTDOWN_TIMEOUT_SECONDS = 15.0


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		levelname = orig_levelname
		if levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level, logging.INFO)
	is_tty = sys.stdout.isatty()

	# Choose formatter based on TTY detection
	if is_tty:
		formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)

	# force=True removes any pre-existing handlers (e.g. from uvicorn)
	# so every logger inherits the same format.
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)

	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# Make sure uvicorn loggers use the root handler & level
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("aiosqlite", "watchfiles"):
		logging.getLogger(name).setLevel(logging.WARNING)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	# ─── BOOTSTRAP ───────────────────────────────────────────
	engine: Engine | None = getattr(app.state, "engine", None)
	if engine is None:
		engine = Engine.from_config(app.state.cfg)
		app.state.engine = engine

	await engine.start()
	_log.info("MeterBox started successfully (pid=%d)", os.getpid())

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	# In-flight ticks finish before the store closes.
	await engine.stop(timeout=_SHUTDOWN_TIMEOUT_SECONDS)

	closed_connections = close_all_connections()
	_log.info("SQLITE_SHUTDOWN connections_closed=%d", closed_connections)
	_log.info("MeterBox shutdown complete")


def create_app(cfg: Config | None = None, engine: Engine | None = None) -> FastAPI:
	"""Application factory for MeterBox.

	*engine* lets callers supply a pre-built engine (custom collectors or
	clock); by default one is built from the loaded configuration with the
	proxy and WireGuard collectors.
	"""
	if cfg is None and engine is None:
		cfg = get_config()
		_setup_logging(cfg.log_level)

	app = FastAPI(
		title="MeterBox",
		description="Traffic accounting and quota engine for proxy/WireGuard hosts",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	# Store config in app state
	app.state.cfg = cfg
	if engine is not None:
		app.state.engine = engine

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(RequestIDMiddleware)

	# Rate limiting
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

	# ─── API ROUTES ──────────────────────────────────────────
	app.include_router(traffic_api.router, prefix="/api/traffic")

	return app
