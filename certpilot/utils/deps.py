#!/usr/bin/env python3
#
# certpilot/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
	from ..certificates.service import CertificateService
	from .config import Config


def get_config(request: Request) -> "Config":
	"""Get the application configuration from app state."""
	return request.app.state.cfg


def get_certificate_service(request: Request) -> "CertificateService":
	"""Get the process-wide renewal orchestrator from app state."""
	return request.app.state.certificate_service
