#!/usr/bin/env python3
#
# certpilot/middleware/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Middleware modules for CertPilot."""

from .https_redirect import HttpsRedirectMiddleware

__all__ = ["HttpsRedirectMiddleware"]
