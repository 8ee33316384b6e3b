#!/usr/bin/env python3
#
# certpilot/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""CertPilot – clustered ACME certificate lifecycle with TLS hot reload."""

from .main import create_app

__all__ = ["create_app"]
