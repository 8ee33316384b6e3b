#!/usr/bin/env python3
#
# certpilot/cluster/peer_auth.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared-secret HMAC authentication for node-to-node requests.

Every peer request carries three headers::

	X-Peer-Token      sender node id
	X-Peer-Timestamp  milliseconds since the Unix epoch
	X-Peer-Signature  hex(HMAC-SHA256(secret, "{token}:{timestamp}"))

Requests older or newer than 60 seconds are rejected to bound replay.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Mapping, Optional

from fastapi import HTTPException, Request

from ..certificates.errors import PeerAuthError
from ..utils.deps import get_config
from ..utils.time import epoch_ms

_log = logging.getLogger(__name__)

PEER_TOKEN_HEADER = "X-Peer-Token"
PEER_TIMESTAMP_HEADER = "X-Peer-Timestamp"
PEER_SIGNATURE_HEADER = "X-Peer-Signature"

MAX_CLOCK_SKEW_MS = 60_000

REASON_NOT_CONFIGURED = "not configured"
REASON_MISSING = "missing"
REASON_INVALID_TIMESTAMP = "invalid timestamp"
REASON_INVALID_SIGNATURE = "invalid signature"


def compute_signature(secret: str, token: str, timestamp: str | int) -> str:
	"""Hex HMAC-SHA256 over ``{token}:{timestamp}``."""
	message = f"{token}:{timestamp}".encode("utf-8")
	return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_peer_headers(node_id: str, secret: str, now_ms: Optional[int] = None) -> dict[str, str]:
	"""Build the authentication headers for an outbound peer request."""
	timestamp = str(epoch_ms() if now_ms is None else now_ms)
	return {
		PEER_TOKEN_HEADER: node_id,
		PEER_TIMESTAMP_HEADER: timestamp,
		PEER_SIGNATURE_HEADER: compute_signature(secret, node_id, timestamp),
	}


def _first(value: Any) -> Optional[str]:
	"""Multi-valued headers use their first element."""
	if isinstance(value, (list, tuple)):
		value = value[0] if value else None
	if value is None:
		return None
	return str(value)


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
	getlist = getattr(headers, "getlist", None)
	if callable(getlist):
		values = getlist(name)
		return _first(values) if values else None
	value = headers.get(name)
	if value is None:
		value = headers.get(name.lower())
	return _first(value)


def verify_peer_request(
	headers: Mapping[str, Any],
	secret: str,
	now_ms: Optional[int] = None,
) -> bool:
	"""Return True if the headers carry a fresh, correctly signed envelope.

	Raises:
		PeerAuthError: with one of the coarse reasons
			``not configured``, ``missing``, ``invalid timestamp``,
			``invalid signature``.
	"""
	if not secret:
		raise PeerAuthError(REASON_NOT_CONFIGURED)

	token = _header(headers, PEER_TOKEN_HEADER)
	timestamp = _header(headers, PEER_TIMESTAMP_HEADER)
	signature = _header(headers, PEER_SIGNATURE_HEADER)
	if not token or not timestamp or not signature:
		raise PeerAuthError(REASON_MISSING)

	try:
		ts = int(timestamp.strip())
	except ValueError:
		raise PeerAuthError(REASON_INVALID_TIMESTAMP) from None
	now = epoch_ms() if now_ms is None else now_ms
	if abs(now - ts) > MAX_CLOCK_SKEW_MS:
		raise PeerAuthError(REASON_INVALID_TIMESTAMP)

	expected = bytes.fromhex(compute_signature(secret, token, timestamp))
	try:
		provided = bytes.fromhex(signature)
	except ValueError:
		raise PeerAuthError(REASON_INVALID_SIGNATURE) from None
	if len(provided) != len(expected) or not hmac.compare_digest(provided, expected):
		raise PeerAuthError(REASON_INVALID_SIGNATURE)
	return True


async def require_peer_auth(request: Request) -> str:
	"""FastAPI dependency guarding ``/cluster/*`` routes. Returns the peer token."""
	secret = get_config(request).certificate.peer_shared_secret
	try:
		verify_peer_request(request.headers, secret)
	except PeerAuthError as exc:
		client = request.client.host if request.client else "unknown"
		_log.warning("PEER_AUTH rejected path=%s client=%s reason=%s", request.url.path, client, exc.reason)
		raise HTTPException(status_code=401, detail=f"Peer authentication failed: {exc.reason}") from None
	return _header(request.headers, PEER_TOKEN_HEADER) or ""
