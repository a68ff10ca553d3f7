#!/usr/bin/env python3
#
# meterbox/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

from fastapi import Request

from ..core.engine import Engine


def get_engine(request: Request) -> Engine:
	"""The accounting engine owned by the app lifespan."""
	return request.app.state.engine
