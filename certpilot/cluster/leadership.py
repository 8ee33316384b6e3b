#!/usr/bin/env python3
#
# certpilot/cluster/leadership.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Cluster-wide renewal leadership via an external TTL lock service."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..certificates.errors import classify_http_error
from ..utils.config import ClusterConfig

_log = logging.getLogger(__name__)

LEADERSHIP_PURPOSE = "certificate-renewal"


class LeadershipCoordinator:
	"""Advisory, TTL-bounded leadership lock for certificate renewal.

	With orchestration disabled every node is its own leader. Otherwise the
	coordination backend arbitrates; any error is treated as "not leader".
	The lock id is private to this instance and cleared on every release.
	"""

	def __init__(self, config: ClusterConfig, *, http_client: Optional[httpx.AsyncClient] = None):
		self.config = config
		self._http_client = http_client
		self._lock_id: Optional[str] = None

	@property
	def is_leader(self) -> bool:
		return self._lock_id is not None

	def is_clustering_enabled(self) -> bool:
		return self.config.enabled

	def get_node_id(self) -> str:
		return self.config.node_id

	def get_cluster_name(self) -> str:
		return self.config.cluster_name

	def get_peers(self) -> list[str]:
		return list(self.config.peers)

	def _headers(self) -> dict[str, str]:
		headers = {"Content-Type": "application/json"}
		if self.config.backend_api_key:
			headers["X-API-Key"] = self.config.backend_api_key
		return headers

	async def _post(self, path: str, body: dict) -> dict:
		url = f"{self.config.backend_url}{path}"
		if self._http_client is not None:
			resp = await self._http_client.post(
				url, json=body, headers=self._headers(), timeout=self.config.backend_timeout,
			)
		else:
			async with httpx.AsyncClient(timeout=self.config.backend_timeout) as client:
				resp = await client.post(url, json=body, headers=self._headers())
		resp.raise_for_status()
		data = resp.json()
		if not isinstance(data, dict):
			raise ValueError(f"Unexpected response from {path}: {data!r}")
		return data

	async def acquire_leadership(self) -> bool:
		"""Try to become the renewal leader. Fails closed on any error."""
		if not self.config.enabled:
			return True
		if not self.config.backend_url:
			_log.warning("LEADERSHIP backend URL not configured, cannot acquire leadership")
			return False

		body = {
			"clusterName": self.config.cluster_name,
			"nodeId": self.config.node_id,
			"purpose": LEADERSHIP_PURPOSE,
			"ttl": self.config.leadership_ttl,
		}
		try:
			data = await self._post("/gateway/leadership/acquire", body)
		except ValueError as exc:
			_log.warning("LEADERSHIP acquire returned invalid response (%s), assuming not leader", exc)
			return False
		except Exception as exc:
			_log.warning("LEADERSHIP acquire failed (%s), assuming not leader", classify_http_error(exc))
			return False

		if data.get("isLeader") and data.get("lockId"):
			self._lock_id = str(data["lockId"])
			_log.info(
				"LEADERSHIP acquired node=%s cluster=%s expires=%s",
				self.config.node_id, self.config.cluster_name, data.get("expiresAt"),
			)
			return True

		_log.info(
			"LEADERSHIP held by another node leader=%s until=%s",
			data.get("currentLeader"), data.get("lockExpiresAt"),
		)
		return False

	async def release_leadership(self) -> None:
		"""Release the lock if held. The local lock id is cleared regardless."""
		if not self.config.enabled or self._lock_id is None:
			return
		lock_id = self._lock_id
		try:
			if not self.config.backend_url:
				_log.warning("LEADERSHIP backend URL not configured, dropping lock locally")
				return
			data = await self._post(
				"/gateway/leadership/release",
				{"clusterName": self.config.cluster_name, "nodeId": self.config.node_id, "lockId": lock_id},
			)
			if data.get("released"):
				_log.info("LEADERSHIP released node=%s at=%s", self.config.node_id, data.get("releasedAt"))
			else:
				_log.warning("LEADERSHIP release not acknowledged for lock %s", lock_id)
		except ValueError as exc:
			_log.warning("LEADERSHIP release returned invalid response: %s", exc)
		except Exception as exc:
			_log.warning("LEADERSHIP release failed (%s), lock expires after TTL", classify_http_error(exc))
		finally:
			self._lock_id = None
