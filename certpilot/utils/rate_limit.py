#!/usr/bin/env python3
#
# certpilot/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rate limiting configuration using slowapi."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limit presets
RATE_LIMIT_DEFAULT = "60/minute"
RATE_LIMIT_RENEW = "10/minute"     # Manual renewal trigger (ACME calls are expensive)
RATE_LIMIT_SYNC = "120/minute"     # Peer replication endpoints

# Global limiter instance
limiter = Limiter(key_func=get_remote_address)

__all__ = [
	"RATE_LIMIT_DEFAULT",
	"RATE_LIMIT_RENEW",
	"RATE_LIMIT_SYNC",
	"limiter",
]
