#!/usr/bin/env python3
#
# certpilot/certificates/service.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Renewal orchestration: decide, drive ACME, persist, replicate, notify."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from pathlib import Path
from typing import Optional

from ..cluster.leadership import LeadershipCoordinator
from ..cluster.replicator import PeerReplicator
from ..utils.config import Config
from ..utils.metrics import (
	CERT_DAYS_UNTIL_EXPIRY,
	CERT_RENEWAL_ATTEMPTS,
	CERT_RENEWAL_FAILURES,
	CERT_RENEWAL_SUCCESS,
	Metrics,
	metrics as default_metrics,
)
from ..utils.time import isoformat_ms, parse_utc, utcnow
from .acme_client import AcmeClient
from .errors import AcmeProtocolError, InvalidInputError
from .events import CertificateEvents
from .models import Certificate, CertificateStatus, CertificateSyncRequest, ChallengeSyncRequest
from .storage import CertificateStorage, describe_certificate
from .watcher import CertificateWatcher

_log = logging.getLogger(__name__)


def _find_http01(authorization: dict) -> Optional[dict]:
	for challenge in authorization.get("challenges", []):
		if challenge.get("type") == "http-01":
			return challenge
	return None


def _b64decode(value: str, field_name: str) -> bytes:
	try:
		return base64.b64decode(value, validate=True)
	except (binascii.Error, ValueError) as exc:
		raise InvalidInputError(f"{field_name} is not valid base64") from exc


class CertificateService:
	"""Central control loop for the certificate lifecycle on one node."""

	def __init__(
		self,
		config: Config,
		*,
		storage: CertificateStorage,
		acme: AcmeClient,
		coordinator: LeadershipCoordinator,
		replicator: PeerReplicator,
		events: CertificateEvents,
		watcher: Optional[CertificateWatcher] = None,
		metrics: Optional[Metrics] = None,
	):
		self.config = config
		self.storage = storage
		self.acme = acme
		self.coordinator = coordinator
		self.replicator = replicator
		self.events = events
		self.watcher = watcher
		self.metrics = metrics or default_metrics
		self._cycle_lock = asyncio.Lock()
		self._manual_tasks: set[asyncio.Task] = set()

	@classmethod
	def from_config(cls, config: Config) -> "CertificateService":
		"""Wire the default collaborators for ``config``."""
		cert_cfg = config.certificate
		storage = CertificateStorage(cert_cfg.storage_path)
		events = CertificateEvents()
		coordinator = LeadershipCoordinator(config.cluster)
		acme_enabled = cert_cfg.enabled and not config.manual_cert_provided
		return cls(
			config,
			storage=storage,
			acme=AcmeClient(cert_cfg.acme_directory_url, storage, email=cert_cfg.email, enabled=acme_enabled),
			coordinator=coordinator,
			replicator=PeerReplicator(coordinator, cert_cfg.peer_shared_secret),
			events=events,
			watcher=CertificateWatcher(
				storage, events, enabled=acme_enabled, stability_ms=cert_cfg.watch_stability_ms,
			),
		)

	@property
	def enabled(self) -> bool:
		return self.config.certificate.enabled

	@property
	def manual_mode(self) -> bool:
		return self.config.manual_cert_provided

	# -----------------------------------------------------------------------
	# Lifecycle
	# -----------------------------------------------------------------------

	async def initialize(self) -> None:
		"""Startup hook. Failures are logged; the process keeps serving."""
		if not self.enabled:
			_log.info("Certificate management disabled")
			return
		if self.manual_mode:
			_log.info("Using manually provided certificate %s, ACME disabled", self.config.tls_cert_path)
			self.update_expiry_gauge()
			return

		try:
			self.storage.ensure_directories()
			await self.acme.initialize()
		except Exception:
			_log.exception("ACME initialization failed, renewal will retry on the next check")

		if self.watcher is not None:
			await self.watcher.start_watching()
		self.update_expiry_gauge()

	async def shutdown(self) -> None:
		for task in list(self._manual_tasks):
			task.cancel()
		if self._manual_tasks:
			await asyncio.gather(*self._manual_tasks, return_exceptions=True)
		if self.watcher is not None:
			await self.watcher.stop_watching()
		await self.events.drain()
		await self.acme.aclose()
		await self.replicator.aclose()

	# -----------------------------------------------------------------------
	# Renewal
	# -----------------------------------------------------------------------

	def _renewal_reason(self, certificate: Optional[Certificate]) -> Optional[str]:
		"""Why the current certificate must be replaced, or None if it is fine."""
		if certificate is None:
			return "no certificate"
		required = self.config.certificate.required_domains
		if not certificate.covers(required):
			return f"domains {certificate.domains} do not cover {required}"
		days = certificate.days_until_expiry()
		if days <= self.config.certificate.renew_threshold_days:
			return f"expires in {days} days"
		return None

	async def check_and_renew_if_needed(self) -> bool:
		"""Renew if required. Returns True when a new certificate was issued."""
		cert_cfg = self.config.certificate
		if not self.enabled:
			_log.debug("Certificate management disabled, skipping check")
			return False
		if self.manual_mode:
			_log.debug("Manual certificate configured, skipping ACME check")
			return False
		if not cert_cfg.domain:
			_log.warning("No certificate domain configured, skipping renewal check")
			return False

		async with self._cycle_lock:
			if not await self.coordinator.acquire_leadership():
				_log.info("CERT_RENEWAL skipped: not the renewal leader")
				return False
			try:
				current = self.storage.load_certificate()
				reason = self._renewal_reason(current)
				if reason is None:
					_log.info("CERT_RENEWAL not needed (%d days remaining)", current.days_until_expiry())
					self.update_expiry_gauge(current)
					return False
				_log.info("CERT_RENEWAL required: %s", reason)
				await self.renew_certificate()
				return True
			finally:
				await self.coordinator.release_leadership()

	async def renew_certificate(self) -> Certificate:
		"""Run one full ACME order. Any failure aborts the order and is re-raised."""
		cert_cfg = self.config.certificate
		self.metrics.increment(CERT_RENEWAL_ATTEMPTS)
		try:
			if not self.acme.initialized:
				await self.acme.initialize()

			order, certificate_key = await self.acme.create_order(cert_cfg.domain, list(cert_cfg.additional_domains))
			for authorization in order.authorizations:
				identifier = authorization.get("identifier", {}).get("value", "?")
				challenge = _find_http01(authorization)
				if challenge is None:
					raise AcmeProtocolError(f"No HTTP-01 challenge offered for {identifier}")

				key_authorization = self.acme.get_challenge_key_authorization(challenge)
				self.storage.save_challenge_response(challenge["token"], key_authorization)
				if self.replicator.active:
					await self.replicator.distribute_challenge(challenge["token"], key_authorization)
				if cert_cfg.challenge_settle_delay > 0:
					await asyncio.sleep(cert_cfg.challenge_settle_delay)
				await self.acme.complete_challenge(challenge)
				_log.info("CERT_RENEWAL challenge submitted for %s", identifier)

			await self.acme.wait_for_order_ready(order)
			certificate = await self.acme.finalize_certificate(order, certificate_key)
			self.storage.save_certificate(certificate)
			if self.replicator.active:
				await self.replicator.distribute_certificate(certificate)
		except Exception:
			self.metrics.increment(CERT_RENEWAL_FAILURES)
			_log.exception("CERT_RENEWAL failed for %s", ",".join(cert_cfg.required_domains))
			raise
		finally:
			self._cleanup_challenges()

		self.metrics.increment(CERT_RENEWAL_SUCCESS)
		self.update_expiry_gauge(certificate)
		self.events.emit(certificate)
		_log.info(
			"CERT_RENEWAL succeeded domains=%s expires=%s",
			",".join(certificate.domains), isoformat_ms(certificate.expires_at),
		)
		return certificate

	def _cleanup_challenges(self) -> None:
		try:
			self.storage.cleanup_challenges()
		except OSError as exc:
			_log.warning("Failed to clean up challenge files: %s", exc)

	async def scheduled_check(self) -> None:
		"""Timer entry point: errors are logged and the next tick retries."""
		try:
			await self.check_and_renew_if_needed()
		except Exception as exc:
			_log.error("Scheduled certificate check failed (%s), will retry on the next tick", exc)

	async def manual_renewal(self) -> bool:
		"""Operator entry point: errors propagate to the caller."""
		_log.info("Manual certificate renewal requested")
		return await self.check_and_renew_if_needed()

	def trigger_manual_renewal(self) -> asyncio.Task:
		"""Start ``manual_renewal`` in the background and return its task."""
		task = asyncio.create_task(self._run_manual_renewal())
		self._manual_tasks.add(task)
		task.add_done_callback(self._manual_tasks.discard)
		return task

	async def _run_manual_renewal(self) -> None:
		try:
			await self.manual_renewal()
		except Exception as exc:
			_log.error("Manual certificate renewal failed: %s", exc)

	# -----------------------------------------------------------------------
	# Peer-inbound sync
	# -----------------------------------------------------------------------

	def receive_challenge_sync(self, request: ChallengeSyncRequest) -> None:
		self.storage.save_challenge_response(request.token, request.key_auth)
		_log.info("PEER_SYNC received challenge %s", request.token.strip())

	def receive_certificate_sync(self, request: CertificateSyncRequest) -> Certificate:
		"""Persist a peer-pushed certificate and emit the reload notification."""
		issued_at = parse_utc(request.metadata.issued_at)
		expires_at = parse_utc(request.metadata.expires_at)
		if issued_at is None or expires_at is None:
			raise InvalidInputError("metadata timestamps must be ISO-8601 with a timezone")

		certificate = Certificate(
			private_key=_b64decode(request.private_key, "privateKey"),
			certificate=_b64decode(request.certificate, "certificate"),
			domains=[d for d in request.metadata.domains if d],
			issued_at=issued_at,
			expires_at=expires_at,
			chain=_b64decode(request.chain, "chain") if request.chain else None,
			fullchain=_b64decode(request.fullchain, "fullchain") if request.fullchain else None,
		)
		self.storage.save_certificate(certificate)
		self.update_expiry_gauge(certificate)
		self.events.emit(certificate)
		_log.info("PEER_SYNC received certificate domains=%s", ",".join(certificate.domains))
		return certificate

	# -----------------------------------------------------------------------
	# Status
	# -----------------------------------------------------------------------

	def _load_manual_certificate(self) -> Certificate:
		assert self.config.tls_cert_path is not None and self.config.tls_key_path is not None
		cert_pem = self.config.tls_cert_path.read_bytes()
		domains, issued_at, expires_at = describe_certificate(cert_pem)
		return Certificate(
			private_key=self.config.tls_key_path.read_bytes(),
			certificate=cert_pem,
			domains=domains,
			issued_at=issued_at,
			expires_at=expires_at,
			fullchain=cert_pem,
		)

	def get_current_certificate(self) -> Optional[Certificate]:
		"""The manual override certificate if configured, else the stored one."""
		try:
			if self.manual_mode:
				return self._load_manual_certificate()
			return self.storage.load_certificate()
		except (OSError, ValueError) as exc:
			_log.warning("Failed to load current certificate: %s", exc)
			return None

	def get_tls_files(self) -> Optional[tuple[Path, Path]]:
		"""(certfile, keyfile) for the TLS listener, or None if nothing is available."""
		if self.manual_mode:
			assert self.config.tls_cert_path is not None and self.config.tls_key_path is not None
			if self.config.tls_cert_path.exists() and self.config.tls_key_path.exists():
				return self.config.tls_cert_path, self.config.tls_key_path
			_log.warning("Manual TLS files not found: %s / %s", self.config.tls_cert_path, self.config.tls_key_path)
			return None
		return self.storage.tls_files()

	def get_status(self) -> CertificateStatus:
		certificate = self.get_current_certificate()
		if certificate is None:
			return CertificateStatus(exists=False, valid=False)
		now = utcnow()
		return CertificateStatus(
			exists=True,
			valid=certificate.is_valid(now),
			domain=certificate.primary_domain,
			issued_at=isoformat_ms(certificate.issued_at),
			expires_at=isoformat_ms(certificate.expires_at),
			days_until_expiry=certificate.days_until_expiry(now),
		)

	def update_expiry_gauge(self, certificate: Optional[Certificate] = None) -> None:
		certificate = certificate or self.get_current_certificate()
		if certificate is not None:
			self.metrics.set(CERT_DAYS_UNTIL_EXPIRY, certificate.days_until_expiry())
