#!/usr/bin/env python3
#
# certpilot/api/health.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Liveness / certificate health endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..certificates.service import CertificateService
from ..utils.deps import get_certificate_service
from .response import error_response, ok_response

router = APIRouter(tags=["health"])

# Below this many days the node reports unhealthy
HEALTH_MIN_DAYS = 7


@router.get("/health")
async def health(
	request: Request,
	service: CertificateService = Depends(get_certificate_service),
):
	status = service.get_status()
	if service.enabled:
		healthy = status.exists and status.valid and (status.days_until_expiry or 0) > HEALTH_MIN_DAYS
	else:
		healthy = True

	manager = getattr(request.app.state, "server_manager", None)
	scheduler = getattr(request.app.state, "scheduler", None)
	data = {
		"healthy": healthy,
		"certificate": status.to_wire(),
		"tls_listener": bool(manager and manager.tls_running),
		"jobs": scheduler.get_status() if scheduler else [],
	}
	if not healthy:
		return error_response(503, data=data)
	return ok_response(data=data)
