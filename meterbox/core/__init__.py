#!/usr/bin/env python3
#
# meterbox/core/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Traffic accounting core: normalization, sampling, quotas, reports, retention."""
