#!/usr/bin/env python3
#
# certpilot/api/acme.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Public ACME HTTP-01 challenge endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from ..certificates.service import CertificateService
from ..utils.deps import get_certificate_service

_log = logging.getLogger(__name__)

router = APIRouter(tags=["acme"])


@router.get("/.well-known/acme-challenge/{token}", response_class=PlainTextResponse)
async def serve_challenge(
	token: str,
	service: CertificateService = Depends(get_certificate_service),
) -> str:
	"""Serve the key authorization for ``token``.

	Unknown and malformed tokens both answer 404 so the endpoint reveals
	nothing about the challenge store.
	"""
	key_auth = service.storage.get_challenge_response(token)
	if key_auth is None:
		_log.debug("ACME challenge not found for token %r", token[:64])
		raise HTTPException(status_code=404, detail="Challenge not found")
	return key_auth
