#!/usr/bin/env python3
#
# certpilot/certificates/storage.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Filesystem storage for certificates, the ACME account key and HTTP-01 challenges.

Layout under the storage root::

	account.key              ACME account key (0600)
	cert.pem / .backup       leaf certificate (0644)
	key.pem / .backup        certificate private key (0600)
	chain.pem                intermediates (0644, optional)
	fullchain.pem            leaf + intermediates (0644, optional)
	metadata.json            {domains, issuedAt, expiresAt}
	challenges/{token}       key authorizations (transient)

Every write goes through :func:`certpilot.utils.atomic.atomic_write`, so the
TLS listener and the watcher never observe a half-written file.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ..utils.atomic import atomic_write
from ..utils.time import isoformat_ms, parse_utc
from .errors import InvalidChallengeTokenError
from .models import Certificate

_log = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_PEM_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_END = b"-----END CERTIFICATE-----"


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def normalize_token(token: Optional[str]) -> Optional[str]:
	"""Return the trimmed token if it is path-safe, else None."""
	if not isinstance(token, str):
		return None
	token = token.strip()
	if not token or not _TOKEN_RE.fullmatch(token):
		return None
	return token


def split_pem_certificates(pem_data: bytes) -> list[bytes]:
	"""Split a PEM bundle into individual ``CERTIFICATE`` blocks."""
	blocks = []
	while _PEM_BEGIN in pem_data:
		start = pem_data.find(_PEM_BEGIN)
		end = pem_data.find(_PEM_END, start)
		if end == -1:
			break
		end += len(_PEM_END)
		blocks.append(pem_data[start:end] + b"\n")
		pem_data = pem_data[end:]
	return blocks


def describe_certificate(cert_pem: bytes) -> tuple[list[str], datetime, datetime]:
	"""Read (domains, not_before, not_after) from the first certificate in ``cert_pem``.

	Domains are the subject common name followed by the DNS subject
	alternative names, empty and duplicate entries dropped.
	"""
	cert = x509.load_pem_x509_certificate(cert_pem)
	names: list[str] = []
	for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
		names.append(str(attr.value))
	try:
		san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
		names.extend(san.value.get_values_for_type(x509.DNSName))
	except x509.ExtensionNotFound:
		pass

	domains: list[str] = []
	for name in names:
		if name and name not in domains:
			domains.append(name)
	return domains, cert.not_valid_before_utc, cert.not_valid_after_utc


def _copy_backup(path: Path) -> None:
	"""Copy ``path`` to ``path.backup`` if it exists; failures are logged."""
	if not path.exists():
		return
	backup = path.with_name(path.name + ".backup")
	try:
		shutil.copy2(path, backup)
	except OSError as exc:
		_log.warning("Failed to back up %s: %s", path, exc)


class CertificateStorage:
	"""Certificate Store and Challenge Store rooted at ``storage_path``."""

	def __init__(self, storage_path: Path):
		self.storage_path = Path(storage_path)
		self.challenges_path = self.storage_path / "challenges"
		self.account_key_path = self.storage_path / "account.key"
		self.cert_path = self.storage_path / "cert.pem"
		self.key_path = self.storage_path / "key.pem"
		self.chain_path = self.storage_path / "chain.pem"
		self.fullchain_path = self.storage_path / "fullchain.pem"
		self.metadata_path = self.storage_path / "metadata.json"

	def ensure_directories(self) -> None:
		"""Create the storage root and challenges directory (0700)."""
		for directory in (self.storage_path, self.challenges_path):
			directory.mkdir(mode=0o700, parents=True, exist_ok=True)

	# -----------------------------------------------------------------------
	# Account key
	# -----------------------------------------------------------------------

	def load_or_generate_account_key(self) -> ec.EllipticCurvePrivateKey:
		"""Return the on-disk ACME account key, generating a P-256 key on first use.

		Not cluster-safe: every node may create its own account key, which
		is fine because the ACME account is bound to the key.
		"""
		if self.account_key_path.exists():
			key = serialization.load_pem_private_key(self.account_key_path.read_bytes(), password=None)
			if isinstance(key, ec.EllipticCurvePrivateKey):
				return key
			raise ValueError("Account key is not an EC key")

		self.ensure_directories()
		key = ec.generate_private_key(ec.SECP256R1())
		key_pem = key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		atomic_write(self.account_key_path, key_pem, mode=0o600)
		_log.info("Created new ACME account key at %s", self.account_key_path)
		return key

	# -----------------------------------------------------------------------
	# Certificates
	# -----------------------------------------------------------------------

	def save_certificate(self, cert: Certificate) -> None:
		"""Persist ``cert`` after copying the current cert/key to ``.backup``.

		If key.pem cannot be written, cert.pem is rolled back so the pair on
		disk always matches.
		"""
		self.ensure_directories()
		_copy_backup(self.cert_path)
		_copy_backup(self.key_path)

		previous_cert = self.cert_path.read_bytes() if self.cert_path.exists() else None
		atomic_write(self.cert_path, cert.certificate, mode=0o644)
		try:
			atomic_write(self.key_path, cert.private_key, mode=0o600)
		except OSError:
			# key.pem is still the old one; put the matching leaf back
			self._restore_certificate(previous_cert)
			raise
		for path, data in ((self.chain_path, cert.chain), (self.fullchain_path, cert.fullchain)):
			if data:
				atomic_write(path, data, mode=0o644)
			else:
				# Never leave a previous certificate's chain next to a new leaf
				path.unlink(missing_ok=True)

		metadata = {
			"domains": list(cert.domains),
			"issuedAt": isoformat_ms(cert.issued_at),
			"expiresAt": isoformat_ms(cert.expires_at),
		}
		atomic_write(self.metadata_path, json.dumps(metadata, indent=2).encode("utf-8"), mode=0o644)
		_log.info(
			"CERT_STORE saved domains=%s expires=%s",
			",".join(cert.domains), metadata["expiresAt"],
		)

	def _restore_certificate(self, previous: Optional[bytes]) -> None:
		try:
			if previous is None:
				self.cert_path.unlink(missing_ok=True)
			else:
				atomic_write(self.cert_path, previous, mode=0o644)
		except OSError as exc:
			_log.error("CERT_STORE failed to restore %s after a failed save: %s", self.cert_path, exc)

	def _load_metadata(self) -> Optional[tuple[list[str], datetime, datetime]]:
		if not self.metadata_path.exists():
			return None
		try:
			raw = json.loads(self.metadata_path.read_text(encoding="utf-8"))
			domains = [str(d) for d in raw.get("domains", []) if d]
			issued_at = parse_utc(raw.get("issuedAt", ""))
			expires_at = parse_utc(raw.get("expiresAt", ""))
		except (OSError, ValueError, AttributeError) as exc:
			_log.warning("Ignoring unreadable %s: %s", self.metadata_path, exc)
			return None
		if not domains or issued_at is None or expires_at is None:
			_log.warning("Ignoring incomplete %s", self.metadata_path)
			return None
		return domains, issued_at, expires_at

	def load_certificate(self) -> Optional[Certificate]:
		"""Load the active certificate, or None if cert.pem or key.pem is missing.

		Metadata comes from metadata.json when present, otherwise it is
		reconstructed from the certificate itself.
		"""
		if not self.cert_path.exists() or not self.key_path.exists():
			return None

		certificate = self.cert_path.read_bytes()
		private_key = self.key_path.read_bytes()
		chain = self.chain_path.read_bytes() if self.chain_path.exists() else None
		fullchain = self.fullchain_path.read_bytes() if self.fullchain_path.exists() else None

		metadata = self._load_metadata()
		if metadata is None:
			metadata = describe_certificate(certificate)
		domains, issued_at, expires_at = metadata

		return Certificate(
			private_key=private_key,
			certificate=certificate,
			domains=domains,
			issued_at=issued_at,
			expires_at=expires_at,
			chain=chain,
			fullchain=fullchain,
		)

	def tls_files(self) -> Optional[tuple[Path, Path]]:
		"""Return (certfile, keyfile) for the TLS listener, preferring fullchain.pem."""
		if not self.key_path.exists():
			return None
		if self.fullchain_path.exists():
			return self.fullchain_path, self.key_path
		if self.cert_path.exists():
			return self.cert_path, self.key_path
		return None

	# -----------------------------------------------------------------------
	# HTTP-01 challenges
	# -----------------------------------------------------------------------

	def save_challenge_response(self, token: str, key_authorization: str) -> None:
		"""Persist a key authorization; invalid tokens raise before any I/O."""
		safe_token = normalize_token(token)
		if safe_token is None:
			raise InvalidChallengeTokenError(f"Invalid challenge token: {token!r}")
		self.ensure_directories()
		atomic_write(self.challenges_path / safe_token, key_authorization.encode("utf-8"), mode=0o644)
		_log.debug("Saved challenge response for token %s", safe_token)

	def get_challenge_response(self, token: Optional[str]) -> Optional[str]:
		"""Return the key authorization for ``token`` or None. Never raises."""
		safe_token = normalize_token(token)
		if safe_token is None:
			return None
		try:
			return (self.challenges_path / safe_token).read_text(encoding="utf-8")
		except (OSError, UnicodeDecodeError):
			return None

	def cleanup_challenges(self) -> None:
		"""Remove every challenge file; a missing directory is fine."""
		if not self.challenges_path.is_dir():
			return
		removed = 0
		for path in self.challenges_path.iterdir():
			try:
				path.unlink()
				removed += 1
			except FileNotFoundError:
				continue
			except OSError as exc:
				_log.warning("Failed to remove challenge file %s: %s", path, exc)
		_log.debug("Removed %d challenge files", removed)
