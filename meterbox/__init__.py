#!/usr/bin/env python3
#
# meterbox/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""MeterBox – traffic accounting and quota engine for proxy/WireGuard hosts."""

from .main import create_app

__all__ = ["create_app"]
