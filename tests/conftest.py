#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared pytest fixtures.

Fake CA
-------
The ``fake_ca`` fixture serves a minimal ACME v2 server through respx. It
parses the CSR sent to finalize and issues a real certificate for the CSR's
public key (signed by an in-memory issuer), so key pairs match and the
result can be loaded by a TLS listener.
"""

from __future__ import annotations

import base64
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest
import respx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certpilot.certificates.acme_client import AcmeOrder
from certpilot.certificates.events import CertificateEvents
from certpilot.certificates.models import Certificate
from certpilot.certificates.storage import CertificateStorage
from certpilot.utils.config import CertificateConfig, ClusterConfig, Config, ServerConfig
from certpilot.utils.metrics import Metrics

CA_BASE = "https://ca.test/acme"
CA_DIRECTORY = f"{CA_BASE}/directory"
PEER_SECRET = "peer-shared-secret"


# ─── Certificate helpers ──────────────────────────────────────────────────────

def _pem_key(key) -> bytes:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)


def build_certificate(
	domains: list[str],
	public_key,
	signing_key,
	issuer: x509.Name,
	not_before: datetime,
	not_after: datetime,
) -> bytes:
	builder = (
		x509.CertificateBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
		.issuer_name(issuer)
		.public_key(public_key)
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_before)
		.not_valid_after(not_after)
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
	)
	return builder.sign(signing_key, hashes.SHA256()).public_bytes(serialization.Encoding.PEM)


def make_certificate(
	domains: list[str],
	*,
	days_valid: float = 90,
	issued_days_ago: float = 1,
) -> Certificate:
	"""Self-signed EC certificate wrapped in the Certificate value type."""
	key = ec.generate_private_key(ec.SECP256R1())
	now = datetime.now(timezone.utc).replace(microsecond=0)
	not_before = now - timedelta(days=issued_days_ago)
	not_after = now + timedelta(days=days_valid)
	subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
	cert_pem = build_certificate(domains, key.public_key(), key, subject, not_before, not_after)
	return Certificate(
		private_key=_pem_key(key),
		certificate=cert_pem,
		domains=list(domains),
		issued_at=not_before,
		expires_at=not_after,
		fullchain=cert_pem,
	)


@pytest.fixture
def cert_factory() -> Callable[..., Certificate]:
	return make_certificate


# ─── Configuration ────────────────────────────────────────────────────────────

@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
	"""Build a Config rooted in tmp_path; keyword groups override sections."""

	def _make(
		*,
		certificate: Optional[dict] = None,
		cluster: Optional[dict] = None,
		server: Optional[dict] = None,
		**top: object,
	) -> Config:
		cert_cfg = CertificateConfig(
			enabled=True,
			email="ops@cert.test",
			domain="cert.test",
			storage_path=tmp_path / "certificates",
			acme_directory_url=CA_DIRECTORY,
			peer_shared_secret=PEER_SECRET,
			initial_check_delay=0.0,
			challenge_settle_delay=0.0,
			watch_stability_ms=50,
		)
		cluster_cfg = ClusterConfig(node_id="node-a")
		server_cfg = ServerConfig(host="127.0.0.1", port=0, https_enabled=False, https_port=0, shutdown_grace=1.0)
		cfg = Config(
			base_dir=tmp_path,
			data_dir=tmp_path,
			certificate=replace(cert_cfg, **(certificate or {})),
			cluster=replace(cluster_cfg, **(cluster or {})),
			server=replace(server_cfg, **(server or {})),
		)
		return replace(cfg, **top) if top else cfg

	return _make


@pytest.fixture
def storage(tmp_path: Path) -> CertificateStorage:
	return CertificateStorage(tmp_path / "certificates")


@pytest.fixture
def metrics() -> Metrics:
	return Metrics()


@pytest.fixture
def events() -> CertificateEvents:
	return CertificateEvents()


# ─── Fake ACME driver (no HTTP) ───────────────────────────────────────────────

class FakeAcme:
	"""Stands in for AcmeClient in orchestrator tests; records every call."""

	def __init__(self, *, offer_http01: bool = True, fail_finalize: bool = False, days_valid: float = 90):
		self.offer_http01 = offer_http01
		self.fail_finalize = fail_finalize
		self.days_valid = days_valid
		self.initialized = True
		self.orders: list[list[str]] = []
		self.completed: list[str] = []
		self.calls: list[str] = []
		self.storage: Optional[CertificateStorage] = None
		self.challenge_files_seen: list[str] = []

	async def initialize(self) -> None:
		self.calls.append("initialize")
		self.initialized = True

	async def aclose(self) -> None:
		self.calls.append("aclose")

	async def create_order(self, primary_domain, additional_domains=None):
		identifiers = [d for d in [primary_domain, *(additional_domains or [])] if d]
		self.orders.append(identifiers)
		self.calls.append("create_order")
		challenges = [{"type": "dns-01", "url": "https://ca.test/chall/dns", "token": "dns_token"}]
		authorizations = []
		for index, domain in enumerate(identifiers):
			offered = list(challenges)
			if self.offer_http01:
				offered.append({"type": "http-01", "url": f"https://ca.test/chall/{index}", "token": f"token_{index}"})
			authorizations.append({"identifier": {"type": "dns", "value": domain}, "challenges": offered})
		order = AcmeOrder(url="https://ca.test/order/1", body={"status": "pending"}, identifiers=identifiers)
		order.authorizations = authorizations
		return order, b"unused-key"

	def get_challenge_key_authorization(self, challenge: dict) -> str:
		return f"{challenge['token']}.thumbprint"

	async def complete_challenge(self, challenge: dict) -> dict:
		if self.storage is not None:
			self.challenge_files_seen.append(self.storage.get_challenge_response(challenge["token"]) or "")
		self.completed.append(challenge["token"])
		self.calls.append("complete_challenge")
		return {"status": "processing"}

	async def wait_for_order_ready(self, order: AcmeOrder) -> dict:
		self.calls.append("wait_for_order_ready")
		order.body["status"] = "ready"
		return order.body

	async def finalize_certificate(self, order: AcmeOrder, certificate_key: bytes) -> Certificate:
		self.calls.append("finalize_certificate")
		if self.fail_finalize:
			from certpilot.certificates.errors import AcmeProtocolError
			raise AcmeProtocolError("Finalize failed (403): rejected", status_code=403)
		return make_certificate(order.identifiers, days_valid=self.days_valid, issued_days_ago=0)


@pytest.fixture
def fake_acme() -> FakeAcme:
	return FakeAcme()


@pytest.fixture
def fake_acme_factory() -> Callable[..., FakeAcme]:
	return FakeAcme


# ─── Fake ACME server (respx) ─────────────────────────────────────────────────

def _jws_payload(request: httpx.Request) -> Optional[dict]:
	body = json.loads(request.content)
	payload_b64 = body["payload"]
	if not payload_b64:
		return None
	padded = payload_b64 + "=" * (-len(payload_b64) % 4)
	return json.loads(base64.urlsafe_b64decode(padded))


def _jws_protected(request: httpx.Request) -> dict:
	body = json.loads(request.content)
	padded = body["protected"] + "=" * (-len(body["protected"]) % 4)
	return json.loads(base64.urlsafe_b64decode(padded))


class FakeCA:
	"""In-memory ACME v2 server mounted on a respx router."""

	def __init__(self, router: respx.MockRouter):
		self.router = router
		self.issuer_key = ec.generate_private_key(ec.SECP256R1())
		self.issuer_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake Test CA")])
		now = datetime.now(timezone.utc)
		self.issuer_pem = build_certificate(
			["Fake Test CA"], self.issuer_key.public_key(), self.issuer_key, self.issuer_name,
			now - timedelta(days=1), now + timedelta(days=3650),
		)
		self.account_status = 201
		self.nonce_counter = 0
		self.identifiers: list[str] = []
		self.order_status = "pending"
		self.csr: Optional[x509.CertificateSigningRequest] = None
		self.protected_headers: list[dict] = []

		router.get(CA_DIRECTORY).mock(return_value=httpx.Response(200, json={
			"newNonce": f"{CA_BASE}/new-nonce",
			"newAccount": f"{CA_BASE}/new-account",
			"newOrder": f"{CA_BASE}/new-order",
		}))
		router.head(f"{CA_BASE}/new-nonce").mock(side_effect=self._nonce)
		self.new_account = router.post(f"{CA_BASE}/new-account").mock(side_effect=self._new_account)
		self.new_order = router.post(f"{CA_BASE}/new-order").mock(side_effect=self._new_order)
		self.authz = router.post(url__regex=rf"{CA_BASE}/authz/(?P<idx>\d+)").mock(side_effect=self._authz)
		self.challenge = router.post(url__regex=rf"{CA_BASE}/chall/(?P<idx>\d+)").mock(side_effect=self._challenge)
		self.order = router.post(f"{CA_BASE}/order/1").mock(side_effect=self._order)
		self.finalize = router.post(f"{CA_BASE}/finalize/1").mock(side_effect=self._finalize)
		self.download = router.post(f"{CA_BASE}/cert/1").mock(side_effect=self._download)

	def _headers(self, **extra: str) -> dict:
		self.nonce_counter += 1
		return {"Replay-Nonce": f"nonce-{self.nonce_counter}", **extra}

	def _record(self, request: httpx.Request) -> None:
		self.protected_headers.append(_jws_protected(request))

	def _nonce(self, request: httpx.Request) -> httpx.Response:
		return httpx.Response(200, headers=self._headers())

	def _new_account(self, request: httpx.Request) -> httpx.Response:
		self._record(request)
		if self.account_status in (200, 201, 409):
			return httpx.Response(
				self.account_status,
				headers=self._headers(Location=f"{CA_BASE}/acct/1"),
				json={"status": "valid"},
			)
		return httpx.Response(
			self.account_status,
			headers=self._headers(),
			json={"type": "urn:ietf:params:acme:error:malformed", "detail": "account rejected"},
		)

	def _order_body(self) -> dict:
		body = {
			"status": self.order_status,
			"identifiers": [{"type": "dns", "value": d} for d in self.identifiers],
			"authorizations": [f"{CA_BASE}/authz/{i}" for i in range(len(self.identifiers))],
			"finalize": f"{CA_BASE}/finalize/1",
		}
		if self.order_status == "valid":
			body["certificate"] = f"{CA_BASE}/cert/1"
		return body

	def _new_order(self, request: httpx.Request) -> httpx.Response:
		self._record(request)
		payload = _jws_payload(request) or {}
		self.identifiers = [i["value"] for i in payload.get("identifiers", [])]
		self.order_status = "pending"
		return httpx.Response(201, headers=self._headers(Location=f"{CA_BASE}/order/1"), json=self._order_body())

	def _authz(self, request: httpx.Request, idx: str) -> httpx.Response:
		domain = self.identifiers[int(idx)]
		return httpx.Response(200, headers=self._headers(), json={
			"identifier": {"type": "dns", "value": domain},
			"status": "pending",
			"challenges": [
				{"type": "dns-01", "url": f"{CA_BASE}/chall/dns{idx}", "token": f"dns_{idx}"},
				{"type": "http-01", "url": f"{CA_BASE}/chall/{idx}", "token": f"http_token_{idx}"},
			],
		})

	def _challenge(self, request: httpx.Request, idx: str) -> httpx.Response:
		self.order_status = "ready"
		return httpx.Response(200, headers=self._headers(), json={"type": "http-01", "status": "processing"})

	def _order(self, request: httpx.Request) -> httpx.Response:
		return httpx.Response(200, headers=self._headers(), json=self._order_body())

	def _finalize(self, request: httpx.Request) -> httpx.Response:
		payload = _jws_payload(request) or {}
		csr_der = base64.urlsafe_b64decode(payload["csr"] + "=" * (-len(payload["csr"]) % 4))
		self.csr = x509.load_der_x509_csr(csr_der)
		self.order_status = "valid"
		return httpx.Response(200, headers=self._headers(), json=self._order_body())

	def _download(self, request: httpx.Request) -> httpx.Response:
		assert self.csr is not None
		now = datetime.now(timezone.utc).replace(microsecond=0)
		leaf = build_certificate(
			self.identifiers, self.csr.public_key(), self.issuer_key, self.issuer_name,
			now - timedelta(minutes=1), now + timedelta(days=90),
		)
		return httpx.Response(
			200,
			headers=self._headers(**{"Content-Type": "application/pem-certificate-chain"}),
			content=leaf + self.issuer_pem,
		)


@pytest.fixture
def fake_ca():
	with respx.mock(assert_all_called=False) as router:
		yield FakeCA(router)
