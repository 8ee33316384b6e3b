#!/usr/bin/env python3
#
# certpilot/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import re
import secrets
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Fixed constants
# ---------------------------------------------------------------------------
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

# RFC 1123 hostname
_DOMAIN_RE = re.compile(
	r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class CertificateConfig:
	"""ACME / certificate lifecycle settings."""
	enabled: bool = False
	email: str = ""
	domain: str = ""
	additional_domains: tuple[str, ...] = ()
	storage_path: Path = Path("data/certificates")
	check_interval: float = 86400.0  # seconds
	renew_threshold_days: int = 30
	acme_directory_url: str = ACME_DIRECTORY_PROD
	staging: bool = False
	peer_shared_secret: str = ""
	initial_check_delay: float = 5.0
	challenge_settle_delay: float = 2.0
	watch_stability_ms: int = 2000

	@property
	def required_domains(self) -> list[str]:
		"""Primary domain followed by additional domains, empty entries dropped."""
		return [d for d in (self.domain, *self.additional_domains) if d]


@dataclass(frozen=True)
class ClusterConfig:
	"""Multi-node coordination settings."""
	enabled: bool = False
	cluster_name: str = "default"
	node_id: str = ""
	peers: tuple[str, ...] = ()
	leadership_ttl: int = 300  # seconds
	backend_url: str = ""
	backend_api_key: str = ""
	backend_timeout: float = 10.0  # seconds


@dataclass(frozen=True)
class ServerConfig:
	"""Plaintext / TLS listener settings."""
	host: str = "0.0.0.0"
	port: int = 80
	https_enabled: bool = False
	https_port: int = 443
	shutdown_grace: float = 30.0  # seconds


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	log_level: str = "INFO"
	certificate: CertificateConfig = field(default_factory=CertificateConfig)
	cluster: ClusterConfig = field(default_factory=ClusterConfig)
	server: ServerConfig = field(default_factory=ServerConfig)
	tls_cert_path: Path | None = None
	tls_key_path: Path | None = None

	@property
	def manual_cert_provided(self) -> bool:
		"""True when an operator supplied both TLS cert and key paths."""
		return self.tls_cert_path is not None and self.tls_key_path is not None


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Behavior:
	- Ignores blank lines and comments (# ...)
	- Handles `export KEY=VALUE` syntax
	- Does not override already-set environment variables
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#") or "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env_str(name: str, default: str = "") -> str:
	return os.getenv(name, default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	try:
		value = int(raw.strip())
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be an integer, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be >= {minimum}, got {value}")
	return value


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	try:
		value = float(raw.strip())
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be a number, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be >= {minimum}, got {value}")
	return value


def _env_list(name: str) -> tuple[str, ...]:
	"""Comma separated list, whitespace trimmed, empty items dropped."""
	return tuple(item.strip() for item in os.getenv(name, "").split(",") if item.strip())


def _validate_domain(name: str, domain: str) -> str:
	domain = domain.strip().lower().rstrip(".")
	if domain and (len(domain) > 253 or not _DOMAIN_RE.match(domain)):
		raise ConfigValidationError(f"{name} is not a valid domain name: {domain!r}")
	return domain


def default_node_id() -> str:
	"""``<hostname>-<8 hex>``, unique per process start."""
	hostname = os.getenv("HOSTNAME") or socket.gethostname() or "node"
	return f"{hostname}-{secrets.token_hex(4)}"


def _load_certificate_config(data_dir: Path) -> CertificateConfig:
	domain = _validate_domain("CERTPILOT_CERT_DOMAIN", _env_str("CERTPILOT_CERT_DOMAIN"))
	additional = tuple(
		_validate_domain("CERTPILOT_CERT_ADDITIONAL_DOMAINS", d)
		for d in _env_list("CERTPILOT_CERT_ADDITIONAL_DOMAINS")
	)
	staging = _env_bool("CERTPILOT_CERT_STAGING")
	directory_url = _env_str(
		"CERTPILOT_CERT_ACME_DIRECTORY",
		ACME_DIRECTORY_STAGING if staging else ACME_DIRECTORY_PROD,
	)
	return CertificateConfig(
		enabled=_env_bool("CERTPILOT_CERT_ENABLED"),
		email=_env_str("CERTPILOT_CERT_EMAIL"),
		domain=domain,
		additional_domains=additional,
		storage_path=(data_dir / "certificates").resolve(),
		check_interval=_env_float("CERTPILOT_CERT_CHECK_INTERVAL", 86400.0, minimum=1.0),
		renew_threshold_days=_env_int("CERTPILOT_CERT_RENEW_THRESHOLD_DAYS", 30),
		acme_directory_url=directory_url,
		staging=staging,
		peer_shared_secret=_env_str("CERTPILOT_CERT_PEER_SHARED_SECRET"),
	)


def _load_cluster_config() -> ClusterConfig:
	return ClusterConfig(
		enabled=_env_bool("CERTPILOT_ORCHESTRATION_ENABLED"),
		cluster_name=_env_str("CERTPILOT_CLUSTER_NAME", "default") or "default",
		node_id=_env_str("CERTPILOT_NODE_ID") or default_node_id(),
		peers=tuple(p.rstrip("/") for p in _env_list("CERTPILOT_CLUSTER_PEERS")),
		leadership_ttl=_env_int("CERTPILOT_LEADERSHIP_TTL", 300, minimum=1),
		backend_url=_env_str("CERTPILOT_BACKEND_URL").rstrip("/"),
		backend_api_key=_env_str("CERTPILOT_BACKEND_API_KEY"),
		backend_timeout=_env_float("CERTPILOT_BACKEND_REQUEST_TIMEOUT", 10.0, minimum=0.1),
	)


def _load_server_config(cert_enabled: bool) -> ServerConfig:
	return ServerConfig(
		host=_env_str("CERTPILOT_SERVER_HOST", "0.0.0.0") or "0.0.0.0",
		port=_env_int("CERTPILOT_SERVER_PORT", 80, minimum=1),
		https_enabled=_env_bool("CERTPILOT_SERVER_HTTPS_ENABLED", cert_enabled),
		https_port=_env_int("CERTPILOT_SERVER_HTTPS_PORT", 443, minimum=1),
		shutdown_grace=_env_float("CERTPILOT_SERVER_SHUTDOWN_GRACE", 30.0),
	)


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(os.getenv("CERTPILOT_DATA_DIR", str(project_root / "data"))).resolve()
	if data_dir.exists() and not data_dir.is_dir():
		raise ConfigValidationError(f"Path exists but is not a directory: {data_dir}")

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	certificate = _load_certificate_config(data_dir)
	cluster = _load_cluster_config()
	server = _load_server_config(certificate.enabled)

	tls_cert = _env_str("CERTPILOT_TLS_CERT_PATH")
	tls_key = _env_str("CERTPILOT_TLS_KEY_PATH")
	if bool(tls_cert) != bool(tls_key):
		_log.warning("Only one of CERTPILOT_TLS_CERT_PATH / CERTPILOT_TLS_KEY_PATH is set; ignoring manual TLS override")
		tls_cert = tls_key = ""

	if certificate.enabled and not certificate.domain:
		_log.warning("Certificate management enabled but CERTPILOT_CERT_DOMAIN is empty")
	if cluster.enabled and not certificate.peer_shared_secret:
		_log.warning("Orchestration enabled without CERTPILOT_CERT_PEER_SHARED_SECRET; peer endpoints will reject all requests")
	if cluster.enabled and not cluster.backend_url:
		_log.warning("Orchestration enabled without CERTPILOT_BACKEND_URL; leadership can never be acquired")

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		log_level=log_level,
		certificate=certificate,
		cluster=cluster,
		server=server,
		tls_cert_path=Path(tls_cert) if tls_cert else None,
		tls_key_path=Path(tls_key) if tls_key else None,
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:  # Double-checked locking
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
