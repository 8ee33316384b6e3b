#!/usr/bin/env python3
#
# certpilot/server.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Plaintext + TLS listeners with hot certificate reload.

Both listeners are in-process uvicorn servers sharing one FastAPI app.
The plaintext listener runs for the whole process lifetime (ACME HTTP-01
and peer sync need it). The TLS listener is started once a certificate is
available and replaced on every "certificate reloaded" notification.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import signal
import socket
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .certificates.models import Certificate
from .certificates.service import CertificateService
from .certificates.storage import describe_certificate, split_pem_certificates
from .utils.config import Config

_log = logging.getLogger(__name__)

TLS_CIPHERS = (
	"ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
	"ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384:"
	"ECDHE-ECDSA-CHACHA20-POLY1305:ECDHE-RSA-CHACHA20-POLY1305"
)
_STARTUP_POLL = 0.05


class _EmbeddedServer(uvicorn.Server):
	"""uvicorn server that leaves process signals to the owner."""

	def install_signal_handlers(self) -> None:
		pass

	@contextlib.contextmanager
	def capture_signals(self):
		yield


@dataclass
class _Listener:
	name: str
	server: _EmbeddedServer
	task: asyncio.Task
	port: int


def _bind_socket(host: str, port: int) -> socket.socket:
	family = socket.AF_INET6 if ":" in host else socket.AF_INET
	sock = socket.socket(family, socket.SOCK_STREAM)
	try:
		sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		sock.bind((host, port))
	except OSError:
		sock.close()
		raise
	sock.set_inheritable(True)
	return sock


def _fingerprint(cert_pem: bytes, key_pem: bytes) -> str:
	"""Identity of the served material: leaf certificate plus private key."""
	blocks = split_pem_certificates(cert_pem)
	digest = hashlib.sha256(blocks[0] if blocks else cert_pem)
	digest.update(key_pem)
	return digest.hexdigest()


class ServerManager:
	"""Owns the plaintext and TLS listeners of one node."""

	def __init__(self, app: FastAPI, config: Config, service: CertificateService):
		self.app = app
		self.config = config
		self.service = service
		self._http: Optional[_Listener] = None
		self._https: Optional[_Listener] = None
		self._tls_fingerprint: Optional[str] = None
		self.tls_domains: frozenset[str] = frozenset()
		self._reload_lock = asyncio.Lock()
		service.events.subscribe(self.on_certificate_reloaded)

	@property
	def http_running(self) -> bool:
		return self._http is not None and not self._http.task.done()

	@property
	def tls_running(self) -> bool:
		return self._https is not None and not self._https.task.done()

	@property
	def http_port(self) -> Optional[int]:
		return self._http.port if self._http else None

	@property
	def https_port(self) -> Optional[int]:
		return self._https.port if self._https else None

	# -----------------------------------------------------------------------
	# Start / stop primitives
	# -----------------------------------------------------------------------

	async def _start(self, name: str, port: int, tls_files: Optional[tuple[Path, Path]] = None) -> _Listener:
		server_cfg = self.config.server
		options: dict = {
			"host": server_cfg.host,
			"port": port,
			"lifespan": "off",
			"log_config": None,
			"timeout_graceful_shutdown": int(server_cfg.shutdown_grace) or None,
		}
		if tls_files is not None:
			options.update(
				ssl_certfile=str(tls_files[0]),
				ssl_keyfile=str(tls_files[1]),
				ssl_ciphers=TLS_CIPHERS,
			)
		uv_config = uvicorn.Config(self.app, **options)
		uv_config.load()
		if uv_config.ssl is not None:
			uv_config.ssl.minimum_version = ssl.TLSVersion.TLSv1_2

		sock = _bind_socket(server_cfg.host, port)
		bound_port = sock.getsockname()[1]
		server = _EmbeddedServer(uv_config)
		task = asyncio.create_task(server.serve(sockets=[sock]), name=f"certpilot-{name}")

		while not server.started:
			if task.done():
				sock.close()
				exc = task.exception() if not task.cancelled() else None
				raise RuntimeError(f"{name} listener on port {port} failed to start") from exc
			await asyncio.sleep(_STARTUP_POLL)

		_log.info("SERVER %s listener started on %s:%d", name, server_cfg.host, bound_port)
		return _Listener(name=name, server=server, task=task, port=bound_port)

	async def _stop(self, listener: _Listener) -> None:
		"""Graceful stop, then force-close connections after the grace period."""
		grace = self.config.server.shutdown_grace
		listener.server.should_exit = True
		try:
			await asyncio.wait_for(asyncio.shield(listener.task), timeout=grace)
		except asyncio.TimeoutError:
			_log.warning("SERVER %s listener still busy after %.0fs, forcing close", listener.name, grace)
			listener.server.force_exit = True
			try:
				await asyncio.wait_for(asyncio.shield(listener.task), timeout=5.0)
			except asyncio.TimeoutError:
				listener.task.cancel()
		except Exception:
			_log.exception("SERVER %s listener exited with an error", listener.name)
		await asyncio.gather(listener.task, return_exceptions=True)
		_log.info("SERVER %s listener stopped", listener.name)

	async def _start_https(self) -> bool:
		tls_files = self.service.get_tls_files()
		if tls_files is None:
			_log.warning("TLS enabled but no certificate available yet, HTTPS listener not started")
			return False

		certfile, keyfile = tls_files
		cert_pem = certfile.read_bytes()
		domains, _, _ = describe_certificate(cert_pem)
		self._https = await self._start("https", self.config.server.https_port, tls_files)
		self._tls_fingerprint = _fingerprint(cert_pem, keyfile.read_bytes())
		self.tls_domains = frozenset(d.lower() for d in domains)
		return True

	# -----------------------------------------------------------------------
	# Public API
	# -----------------------------------------------------------------------

	async def initialize_servers(self) -> None:
		"""Start plaintext (always) and TLS (if enabled and a certificate exists)."""
		self._http = await self._start("http", self.config.server.port)
		if not self.config.server.https_enabled:
			_log.info("HTTPS disabled, serving plaintext only")
			return
		try:
			await self._start_https()
		except Exception:
			_log.exception("Failed to start HTTPS listener, continuing with plaintext only")

	async def on_certificate_reloaded(self, certificate: Certificate) -> None:
		"""Swap the TLS listener for one serving the new key material."""
		if not self.config.server.https_enabled:
			_log.debug("TLS_RELOAD skipped: HTTPS disabled")
			return

		async with self._reload_lock:
			incoming = _fingerprint(certificate.certificate, certificate.private_key)
			if self.tls_running and incoming == self._tls_fingerprint:
				_log.debug("TLS_RELOAD skipped: listener already serving this certificate")
				return
			try:
				if self._https is not None:
					await self._stop(self._https)
					self._https = None
					self.tls_domains = frozenset()
				if await self._start_https():
					_log.info("TLS_RELOAD complete domains=%s", ",".join(certificate.domains))
			except Exception:
				_log.exception("TLS_RELOAD failed, HTTPS listener is down until the next reload")

	async def shutdown(self) -> None:
		"""Stop both listeners concurrently."""
		listeners = [listener for listener in (self._http, self._https) if listener is not None]
		await asyncio.gather(*(self._stop(listener) for listener in listeners))
		self._http = None
		self._https = None
		self.tls_domains = frozenset()


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------

async def serve(app: FastAPI) -> None:
	"""Run the app lifespan and both listeners until SIGINT/SIGTERM."""
	manager: ServerManager = app.state.server_manager
	stop_event = asyncio.Event()
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, stop_event.set)

	async with app.router.lifespan_context(app):
		await manager.initialize_servers()
		try:
			await stop_event.wait()
			_log.info("Shutdown signal received")
		finally:
			await manager.shutdown()


def run() -> None:
	"""Blocking entry point used by ``main.py`` and the console script."""
	from .main import create_app

	app = create_app()
	try:
		asyncio.run(serve(app))
	except KeyboardInterrupt:
		pass
