#!/usr/bin/env python3
#
# tests/test_replicator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Peer fan-out: signing, payload shape and per-peer isolation."""

from __future__ import annotations

import base64
import json
from dataclasses import replace

import httpx
import pytest
import respx

from certpilot.cluster.leadership import LeadershipCoordinator
from certpilot.cluster.peer_auth import verify_peer_request
from certpilot.cluster.replicator import (
	CERTIFICATE_SYNC_PATH,
	CHALLENGE_SYNC_PATH,
	PeerReplicator,
	certificate_sync_payload,
)
from certpilot.utils.config import ClusterConfig

from .conftest import PEER_SECRET

PEER_B = "http://peer-b.test"
PEER_C = "http://peer-c.test"


def _replicator(enabled: bool = True, peers=(PEER_B, PEER_C)) -> PeerReplicator:
	coordinator = LeadershipCoordinator(ClusterConfig(enabled=enabled, node_id="node-a", peers=tuple(peers)))
	return PeerReplicator(coordinator, PEER_SECRET)


@pytest.fixture
def peers():
	with respx.mock(assert_all_called=False) as router:
		yield router


class TestChallengeFanOut:
	async def test_every_peer_receives_signed_payload(self, peers):
		routes = [peers.post(f"{peer}{CHALLENGE_SYNC_PATH}").mock(return_value=httpx.Response(200)) for peer in (PEER_B, PEER_C)]
		replicator = _replicator()

		report = await replicator.distribute_challenge("tok", "tok.thumb")
		await replicator.aclose()

		assert sorted(report.succeeded) == [PEER_B, PEER_C]
		assert report.failed == {}
		for route in routes:
			assert route.call_count == 1
			request = route.calls.last.request
			assert json.loads(request.content) == {"token": "tok", "keyAuth": "tok.thumb"}
			assert verify_peer_request(request.headers, PEER_SECRET) is True
			assert request.headers["X-Peer-Token"] == "node-a"

	async def test_failing_peer_is_isolated(self, peers, caplog):
		peers.post(f"{PEER_B}{CHALLENGE_SYNC_PATH}").mock(return_value=httpx.Response(500))
		ok = peers.post(f"{PEER_C}{CHALLENGE_SYNC_PATH}").mock(return_value=httpx.Response(200))

		report = await _replicator().distribute_challenge("tok", "tok.thumb")

		assert ok.called
		assert report.succeeded == [PEER_C]
		assert report.failed[PEER_B].kind == "http"
		assert report.failed[PEER_B].status_code == 500
		assert report.timed_out == []
		assert "PEER_SYNC challenge peer=http://peer-b.test failed" in caplog.text

	async def test_timeout_is_classified(self, peers, caplog):
		peers.post(f"{PEER_B}{CHALLENGE_SYNC_PATH}").mock(side_effect=httpx.ReadTimeout("slow"))
		peers.post(f"{PEER_C}{CHALLENGE_SYNC_PATH}").mock(side_effect=httpx.ConnectError("refused"))

		report = await _replicator().distribute_challenge("tok", "tok.thumb")

		assert report.succeeded == []
		assert report.timed_out == [PEER_B]
		assert report.failed[PEER_C].kind == "transport"
		assert "timed out" in caplog.text

	@pytest.mark.parametrize("enabled,peer_list", [(False, (PEER_B,)), (True, ())])
	async def test_inactive_sends_nothing(self, peers, enabled, peer_list):
		route = peers.post(f"{PEER_B}{CHALLENGE_SYNC_PATH}")
		replicator = _replicator(enabled=enabled, peers=peer_list)

		assert replicator.active is False
		report = await replicator.distribute_challenge("tok", "tok.thumb")
		assert report.succeeded == [] and report.failed == {}
		assert not route.called


class TestCertificateFanOut:
	async def test_payload_is_base64_with_metadata(self, peers, cert_factory):
		cert = cert_factory(["cert.test", "www.cert.test"])
		route = peers.post(f"{PEER_B}{CERTIFICATE_SYNC_PATH}").mock(return_value=httpx.Response(200))

		report = await _replicator(peers=(PEER_B,)).distribute_certificate(cert)

		assert report.succeeded == [PEER_B]
		body = json.loads(route.calls.last.request.content)
		assert base64.b64decode(body["certificate"]) == cert.certificate
		assert base64.b64decode(body["privateKey"]) == cert.private_key
		assert base64.b64decode(body["fullchain"]) == cert.fullchain
		assert "chain" not in body
		assert body["metadata"]["domains"] == ["cert.test", "www.cert.test"]
		assert body["metadata"]["expiresAt"].endswith("Z")

	def test_payload_includes_chain_when_present(self, cert_factory):
		cert = replace(cert_factory(["cert.test"]), chain=b"CHAIN")
		assert base64.b64decode(certificate_sync_payload(cert)["chain"]) == b"CHAIN"
