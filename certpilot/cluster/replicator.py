#!/usr/bin/env python3
#
# certpilot/cluster/replicator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Push challenge responses and certificates to peer nodes."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from ..certificates.errors import TransportFailure, classify_http_error
from ..certificates.models import Certificate
from ..utils.time import isoformat_ms
from .leadership import LeadershipCoordinator
from .peer_auth import sign_peer_headers

_log = logging.getLogger(__name__)

CHALLENGE_SYNC_PATH = "/cluster/challenges/sync"
CERTIFICATE_SYNC_PATH = "/cluster/certificates/sync"
CHALLENGE_SYNC_TIMEOUT = 10.0
CERTIFICATE_SYNC_TIMEOUT = 30.0


@dataclass
class ReplicationReport:
	"""Outcome of one fan-out; failures are informational only."""
	succeeded: list[str] = field(default_factory=list)
	failed: dict[str, TransportFailure] = field(default_factory=dict)

	@property
	def timed_out(self) -> list[str]:
		return [peer for peer, failure in self.failed.items() if failure.kind == "timeout"]


def _b64(data: bytes) -> str:
	return base64.b64encode(data).decode("ascii")


def certificate_sync_payload(certificate: Certificate) -> dict:
	"""Wire form of a certificate for ``POST /cluster/certificates/sync``."""
	payload: dict = {
		"certificate": _b64(certificate.certificate),
		"privateKey": _b64(certificate.private_key),
		"metadata": {
			"domains": list(certificate.domains),
			"issuedAt": isoformat_ms(certificate.issued_at),
			"expiresAt": isoformat_ms(certificate.expires_at),
		},
	}
	if certificate.chain:
		payload["chain"] = _b64(certificate.chain)
	if certificate.fullchain:
		payload["fullchain"] = _b64(certificate.fullchain)
	return payload


class PeerReplicator:
	"""Concurrent, per-peer isolated fan-out of sync payloads.

	A failing peer never aborts the others and never fails the caller:
	the renewing node's own copy is already durable.
	"""

	def __init__(
		self,
		coordinator: LeadershipCoordinator,
		shared_secret: str,
		*,
		http_client: Optional[httpx.AsyncClient] = None,
	):
		self.coordinator = coordinator
		self.shared_secret = shared_secret
		self._http_client = http_client
		self._owns_client = http_client is None

	@property
	def active(self) -> bool:
		return self.coordinator.is_clustering_enabled() and bool(self.coordinator.get_peers())

	def _client(self) -> httpx.AsyncClient:
		if self._http_client is None:
			self._http_client = httpx.AsyncClient()
		return self._http_client

	async def aclose(self) -> None:
		if self._http_client is not None and self._owns_client:
			await self._http_client.aclose()
			self._http_client = None

	async def _send(self, peer: str, path: str, payload: dict, timeout: float) -> None:
		headers = sign_peer_headers(self.coordinator.get_node_id(), self.shared_secret)
		resp = await self._client().post(f"{peer}{path}", json=payload, headers=headers, timeout=timeout)
		resp.raise_for_status()

	async def _fan_out(self, kind: str, path: str, payload: dict, timeout: float) -> ReplicationReport:
		report = ReplicationReport()
		if not self.active:
			return report

		peers = self.coordinator.get_peers()
		results = await asyncio.gather(
			*(self._send(peer, path, payload, timeout) for peer in peers),
			return_exceptions=True,
		)
		for peer, result in zip(peers, results):
			if isinstance(result, BaseException):
				if not isinstance(result, Exception):
					raise result
				failure = classify_http_error(result)
				report.failed[peer] = failure
				if failure.kind == "timeout":
					_log.warning("PEER_SYNC %s peer=%s timed out after %.0fs", kind, peer, timeout)
				else:
					_log.error("PEER_SYNC %s peer=%s failed: %s", kind, peer, failure)
			else:
				report.succeeded.append(peer)
				_log.info("PEER_SYNC %s peer=%s ok", kind, peer)
		return report

	async def distribute_challenge(self, token: str, key_authorization: str) -> ReplicationReport:
		return await self._fan_out(
			"challenge",
			CHALLENGE_SYNC_PATH,
			{"token": token, "keyAuth": key_authorization},
			CHALLENGE_SYNC_TIMEOUT,
		)

	async def distribute_certificate(self, certificate: Certificate) -> ReplicationReport:
		return await self._fan_out(
			"certificate",
			CERTIFICATE_SYNC_PATH,
			certificate_sync_payload(certificate),
			CERTIFICATE_SYNC_TIMEOUT,
		)
