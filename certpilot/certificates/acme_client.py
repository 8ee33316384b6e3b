#!/usr/bin/env python3
#
# certpilot/certificates/acme_client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 (RFC 8555) client for HTTP-01 issuance."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from .errors import AcmeProtocolError, InvalidInputError, NotInitializedError
from .models import Certificate
from .storage import CertificateStorage, describe_certificate, split_pem_certificates

_log = logging.getLogger(__name__)

_POLL_DONE = ("ready", "valid")
_POLL_FAILED = ("invalid", "expired", "revoked")


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _parse_acme_error(resp: httpx.Response) -> tuple[str, str]:
	"""Return (detail, problem type) from an RFC 7807 problem document."""
	try:
		error = resp.json()
		return str(error.get("detail") or resp.text), str(error.get("type") or "")
	except (ValueError, AttributeError):
		return resp.text, ""


def _protocol_error(step: str, resp: httpx.Response) -> AcmeProtocolError:
	detail, problem_type = _parse_acme_error(resp)
	message = f"{step} failed ({resp.status_code}): {detail}"
	if problem_type:
		message += f" ({problem_type})"
	return AcmeProtocolError(message, status_code=resp.status_code, problem_type=problem_type, detail=detail)


def _jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if jwk.get("kty") != "EC":
		raise ValueError(f"Unsupported key type: {jwk.get('kty')}")
	canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(hashlib.sha256(canonical_json.encode("utf-8")).digest())


@dataclass
class AcmeOrder:
	"""A created order plus the state needed to drive it to completion."""
	url: str
	body: dict
	identifiers: list[str]
	authorizations: list[dict] = field(default_factory=list)

	@property
	def status(self) -> str:
		return self.body.get("status", "")


class AcmeClient:
	"""ACME driver: account, order, HTTP-01 challenge, finalize, download.

	State machine: uninitialized -> initialized -> order created ->
	authorizations fetched -> challenge completed -> order ready ->
	finalized. Any failing step aborts the order; there is no resume.
	"""

	def __init__(
		self,
		directory_url: str,
		storage: CertificateStorage,
		*,
		email: str = "",
		enabled: bool = True,
		http_client: Optional[httpx.AsyncClient] = None,
		poll_attempts: int = 30,
		poll_delay: float = 2.0,
	):
		self.directory_url = directory_url
		self.storage = storage
		self.email = email
		self.enabled = enabled
		self.poll_attempts = poll_attempts
		self.poll_delay = poll_delay
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.account_key: Optional[ec.EllipticCurvePrivateKey] = None
		self.account_url: Optional[str] = None
		self.http_client = http_client
		self._owns_client = http_client is None
		self._initialized = False

	@property
	def initialized(self) -> bool:
		return self._initialized

	async def initialize(self) -> None:
		"""Load or create the account key and register (or reuse) the ACME account."""
		if not self.enabled:
			_log.debug("ACME client disabled, skipping initialization")
			return
		if self._initialized:
			return

		if self.http_client is None:
			self.http_client = httpx.AsyncClient(timeout=30.0)
		self.account_key = self.storage.load_or_generate_account_key()
		await self._fetch_directory()

		payload: dict = {"termsOfServiceAgreed": True}
		if self.email:
			payload["contact"] = [f"mailto:{self.email}"]

		resp = await self._signed_request(self.directory["newAccount"], payload, use_kid=False)
		if resp.status_code == 409:
			_log.info("ACME account already exists")
		elif resp.status_code not in (200, 201):
			raise _protocol_error("Account registration", resp)

		self.account_url = resp.headers.get("Location")
		if not self.account_url:
			raise AcmeProtocolError("No account URL in newAccount response", status_code=resp.status_code)

		self._initialized = True
		_log.info("ACME client initialized (directory=%s account=%s)", self.directory_url, self.account_url)

	async def aclose(self) -> None:
		if self.http_client is not None and self._owns_client:
			await self.http_client.aclose()
			self.http_client = None
		self._initialized = False

	def _require_initialized(self) -> httpx.AsyncClient:
		if not self._initialized or self.http_client is None:
			raise NotInitializedError("ACME client not initialized")
		return self.http_client

	# -----------------------------------------------------------------------
	# JWS plumbing
	# -----------------------------------------------------------------------

	async def _fetch_directory(self) -> None:
		assert self.http_client is not None
		resp = await self.http_client.get(self.directory_url)
		if resp.status_code != 200:
			raise _protocol_error("Directory fetch", resp)
		self.directory = resp.json()
		for key in ("newNonce", "newAccount", "newOrder"):
			if key not in self.directory:
				raise AcmeProtocolError(f"ACME directory is missing {key!r}")

	async def _get_nonce(self) -> str:
		"""Reuse the last Replay-Nonce, else fetch one (HEAD, falling back to GET)."""
		assert self.http_client is not None
		if self.nonce:
			nonce, self.nonce = self.nonce, None
			return nonce

		try:
			resp = await self.http_client.head(self.directory["newNonce"])
			if "Replay-Nonce" in resp.headers:
				return resp.headers["Replay-Nonce"]
		except httpx.HTTPError as exc:
			_log.debug("HEAD newNonce failed, retrying with GET: %s", exc)

		resp = await self.http_client.get(self.directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			raise AcmeProtocolError("Failed to obtain ACME nonce", status_code=resp.status_code)
		return resp.headers["Replay-Nonce"]

	def _get_jwk(self) -> dict:
		if not self.account_key:
			raise NotInitializedError("Account key not loaded")
		numbers = self.account_key.public_key().public_numbers()
		# P-256 coordinates are 32 bytes each
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}

	def _sign(self, signing_input: bytes) -> bytes:
		"""ES256 signature as raw r || s."""
		assert self.account_key is not None
		r, s = decode_dss_signature(self.account_key.sign(signing_input, ec.ECDSA(hashes.SHA256())))
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	async def _signed_request(
		self,
		url: str,
		payload: Optional[dict],
		*,
		use_kid: bool = True,
		retry_bad_nonce: bool = True,
	) -> httpx.Response:
		"""POST a flattened JWS; ``payload=None`` is POST-as-GET."""
		assert self.http_client is not None
		protected: dict = {"alg": "ES256", "nonce": await self._get_nonce(), "url": url}
		if use_kid and self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self._get_jwk()

		protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
		payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))
		signature = self._sign(f"{protected_b64}.{payload_b64}".encode("ascii"))

		resp = await self.http_client.post(
			url,
			json={"protected": protected_b64, "payload": payload_b64, "signature": _b64url(signature)},
			headers={"Content-Type": "application/jose+json"},
		)
		if "Replay-Nonce" in resp.headers:
			self.nonce = resp.headers["Replay-Nonce"]

		if resp.status_code == 400 and retry_bad_nonce:
			_, problem_type = _parse_acme_error(resp)
			if problem_type.endswith(":badNonce"):
				_log.debug("ACME badNonce for %s, retrying once", url)
				return await self._signed_request(url, payload, use_kid=use_kid, retry_bad_nonce=False)
		return resp

	# -----------------------------------------------------------------------
	# Order lifecycle
	# -----------------------------------------------------------------------

	async def create_order(
		self,
		primary_domain: str,
		additional_domains: Optional[list[str]] = None,
	) -> tuple[AcmeOrder, bytes]:
		"""Create an order and fetch its authorizations.

		Returns the order and a freshly generated PEM private key for the
		certificate-to-be.
		"""
		self._require_initialized()
		identifiers = [d for d in [primary_domain, *(additional_domains or [])] if d]
		if not identifiers:
			raise InvalidInputError("No domains to order a certificate for")

		resp = await self._signed_request(
			self.directory["newOrder"],
			{"identifiers": [{"type": "dns", "value": d} for d in identifiers]},
		)
		if resp.status_code not in (200, 201):
			raise _protocol_error("Order creation", resp)
		order_url = resp.headers.get("Location")
		if not order_url:
			raise AcmeProtocolError("No order URL in newOrder response", status_code=resp.status_code)

		order = AcmeOrder(url=order_url, body=resp.json(), identifiers=identifiers)
		_log.info("ACME order created url=%s domains=%s", order_url, ",".join(identifiers))

		for auth_url in order.body.get("authorizations", []):
			auth_resp = await self._signed_request(auth_url, None)
			if auth_resp.status_code != 200:
				raise _protocol_error("Authorization fetch", auth_resp)
			order.authorizations.append(auth_resp.json())

		certificate_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
		key_pem = certificate_key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		return order, key_pem

	def get_challenge_key_authorization(self, challenge: dict) -> str:
		"""HTTP-01 key authorization: ``{token}.{account key thumbprint}``."""
		self._require_initialized()
		return f"{challenge['token']}.{_jwk_thumbprint(self._get_jwk())}"

	async def complete_challenge(self, challenge: dict) -> dict:
		"""Tell the CA the challenge response is in place."""
		self._require_initialized()
		resp = await self._signed_request(challenge["url"], {})
		if resp.status_code not in (200, 202):
			raise _protocol_error("Challenge completion", resp)
		return resp.json()

	async def _poll_order(self, order: AcmeOrder, wanted: tuple[str, ...]) -> dict:
		for _ in range(self.poll_attempts):
			resp = await self._signed_request(order.url, None)
			if resp.status_code != 200:
				raise _protocol_error("Order poll", resp)
			order.body = resp.json()
			status = order.status
			if status in wanted:
				return order.body
			if status in _POLL_FAILED:
				raise AcmeProtocolError(f"Order {status}: {order.url}")
			await asyncio.sleep(self.poll_delay)
		raise AcmeProtocolError(f"Timed out waiting for order {order.url} (last status {order.status!r})")

	async def wait_for_order_ready(self, order: AcmeOrder) -> dict:
		"""Poll until the order is ``ready`` (or already ``valid``)."""
		self._require_initialized()
		return await self._poll_order(order, _POLL_DONE)

	async def finalize_certificate(self, order: AcmeOrder, certificate_key: bytes) -> Certificate:
		"""Submit the CSR, wait for issuance and download the certificate chain."""
		self._require_initialized()
		if not order.identifiers:
			raise InvalidInputError("Order has no identifiers")

		key = serialization.load_pem_private_key(certificate_key, password=None)
		csr = (
			x509.CertificateSigningRequestBuilder()
			.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, order.identifiers[0])]))
			.add_extension(
				x509.SubjectAlternativeName([x509.DNSName(d) for d in order.identifiers]),
				critical=False,
			)
			.sign(key, hashes.SHA256())
		)
		csr_der = csr.public_bytes(serialization.Encoding.DER)

		resp = await self._signed_request(order.body["finalize"], {"csr": _b64url(csr_der)})
		if resp.status_code not in (200, 201):
			raise _protocol_error("Finalize", resp)
		order.body = resp.json()
		if order.status != "valid":
			await self._poll_order(order, ("valid",))

		cert_url = order.body.get("certificate")
		if not cert_url:
			raise AcmeProtocolError("No certificate URL in finalized order")
		cert_resp = await self._signed_request(cert_url, None)
		if cert_resp.status_code != 200:
			raise _protocol_error("Certificate download", cert_resp)

		fullchain = cert_resp.content
		blocks = split_pem_certificates(fullchain)
		if not blocks:
			raise AcmeProtocolError("Certificate download contained no PEM certificates")
		_, issued_at, expires_at = describe_certificate(blocks[0])

		_log.info(
			"ACME certificate issued domains=%s expires=%s",
			",".join(order.identifiers), expires_at.isoformat(),
		)
		return Certificate(
			private_key=certificate_key,
			certificate=blocks[0],
			domains=list(order.identifiers),
			issued_at=issued_at,
			expires_at=expires_at,
			chain=b"".join(blocks[1:]) or None,
			fullchain=fullchain,
		)
