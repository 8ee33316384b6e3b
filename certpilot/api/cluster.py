#!/usr/bin/env python3
#
# certpilot/api/cluster.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Peer-to-peer cluster endpoints (all gated by HMAC peer authentication)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..certificates.errors import CertificateError, InvalidInputError
from ..certificates.models import CertificateSyncRequest, ChallengeSyncRequest
from ..certificates.service import CertificateService
from ..cluster.peer_auth import require_peer_auth
from ..utils.deps import get_certificate_service
from ..utils.rate_limit import RATE_LIMIT_DEFAULT, RATE_LIMIT_RENEW, RATE_LIMIT_SYNC, limiter
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["cluster"], dependencies=[Depends(require_peer_auth)])


@router.post("/challenges/sync")
@limiter.limit(RATE_LIMIT_SYNC)
async def sync_challenge(
	request: Request,
	body: ChallengeSyncRequest,
	service: CertificateService = Depends(get_certificate_service),
) -> dict:
	"""Store a challenge response pushed by the renewing node."""
	try:
		service.receive_challenge_sync(body)
	except InvalidInputError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	except OSError as exc:
		_log.error("Failed to store synced challenge: %s", exc)
		raise HTTPException(status_code=500, detail="Failed to store challenge") from exc
	return ok_response()


@router.post("/certificates/sync")
@limiter.limit(RATE_LIMIT_SYNC)
async def sync_certificate(
	request: Request,
	body: CertificateSyncRequest,
	service: CertificateService = Depends(get_certificate_service),
) -> dict:
	"""Store a certificate pushed by the renewing node and trigger hot reload."""
	try:
		service.receive_certificate_sync(body)
	except InvalidInputError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	except OSError as exc:
		_log.error("Failed to store synced certificate: %s", exc)
		raise HTTPException(status_code=500, detail="Failed to store certificate") from exc
	return ok_response()


@router.get("/certificates/status")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def certificate_status(
	request: Request,
	service: CertificateService = Depends(get_certificate_service),
) -> dict:
	return service.get_status().to_wire()


@router.post("/certificates/renew")
@limiter.limit(RATE_LIMIT_RENEW)
async def renew_certificate(
	request: Request,
	wait: bool = False,
	service: CertificateService = Depends(get_certificate_service),
) -> dict:
	"""Trigger a renewal cycle.

	By default the cycle runs in the background and the call returns at
	once. With ``?wait=true`` the caller waits and a failed cycle is
	reported as 502.
	"""
	if not wait:
		service.trigger_manual_renewal()
		return ok_response(message="Certificate renewal initiated")

	try:
		renewed = await service.manual_renewal()
	except (CertificateError, OSError) as exc:
		raise HTTPException(status_code=502, detail=f"Certificate renewal failed: {exc}") from exc
	return ok_response(message="Certificate renewed" if renewed else "Certificate renewal not required", renewed=renewed)
