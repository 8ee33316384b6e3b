#!/usr/bin/env python3
#
# tests/test_storage.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate Store, Challenge Store and atomic write behaviour."""

from __future__ import annotations

import json
import os
import stat
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from certpilot.certificates.errors import InvalidChallengeTokenError
from certpilot.utils import atomic
from certpilot.utils.time import truncate_ms


def _mode(path) -> int:
	return stat.S_IMODE(os.stat(path).st_mode)


class TestChallengeStore:
	"""Token validation and challenge file lifecycle."""

	@pytest.mark.parametrize("token", ["", "   ", "../etc/passwd", "a/b", "tok.en", "tok en", "tök", "a\\b", None])
	def test_invalid_tokens_return_none(self, storage, token):
		"""Malformed tokens never touch the filesystem and never raise."""
		assert storage.get_challenge_response(token) is None

	def test_unknown_token_returns_none(self, storage):
		assert storage.get_challenge_response("does_not_exist") is None

	def test_save_and_read_round_trip(self, storage):
		storage.save_challenge_response("abc-DEF_123", "abc-DEF_123.thumb")
		assert storage.get_challenge_response("abc-DEF_123") == "abc-DEF_123.thumb"
		assert _mode(storage.challenges_path / "abc-DEF_123") == 0o644

	def test_token_is_trimmed(self, storage):
		storage.save_challenge_response("  padded  ", "padded.thumb")
		assert (storage.challenges_path / "padded").exists()
		assert storage.get_challenge_response(" padded") == "padded.thumb"

	@pytest.mark.parametrize("token", ["../escape", "", "a/b"])
	def test_save_rejects_invalid_token(self, storage, token):
		with pytest.raises(InvalidChallengeTokenError):
			storage.save_challenge_response(token, "value")
		assert not (storage.storage_path.parent / "escape").exists()

	def test_cleanup_removes_all_files(self, storage):
		storage.save_challenge_response("one", "1")
		storage.save_challenge_response("two", "2")
		storage.cleanup_challenges()
		assert list(storage.challenges_path.iterdir()) == []

	def test_cleanup_tolerates_missing_directory(self, storage):
		assert not storage.challenges_path.exists()
		storage.cleanup_challenges()

	def test_directories_are_private(self, storage):
		storage.ensure_directories()
		assert _mode(storage.storage_path) == 0o700
		assert _mode(storage.challenges_path) == 0o700


class TestAccountKey:
	"""ACME account key persistence."""

	def test_generates_and_persists_owner_only(self, storage):
		key = storage.load_or_generate_account_key()
		assert isinstance(key, ec.EllipticCurvePrivateKey)
		assert _mode(storage.account_key_path) == 0o600

	def test_reuses_existing_key(self, storage):
		first = storage.load_or_generate_account_key()
		second = storage.load_or_generate_account_key()
		assert first.private_numbers() == second.private_numbers()


class TestCertificateStore:
	"""save_certificate / load_certificate semantics."""

	def test_load_returns_none_when_empty(self, storage):
		assert storage.load_certificate() is None

	def test_load_returns_none_without_key(self, storage, cert_factory):
		storage.save_certificate(cert_factory(["cert.test"]))
		storage.key_path.unlink()
		assert storage.load_certificate() is None

	def test_round_trip(self, storage, cert_factory):
		"""Bytes are identical and timestamps survive at millisecond precision."""
		cert = cert_factory(["cert.test", "www.cert.test"])
		cert = replace(cert, issued_at=cert.issued_at.replace(microsecond=123456), chain=b"CHAIN")
		storage.save_certificate(cert)

		loaded = storage.load_certificate()
		assert loaded is not None
		assert loaded.certificate == cert.certificate
		assert loaded.private_key == cert.private_key
		assert loaded.fullchain == cert.fullchain
		assert loaded.chain == b"CHAIN"
		assert loaded.domains == ["cert.test", "www.cert.test"]
		assert loaded.issued_at == truncate_ms(cert.issued_at)
		assert loaded.expires_at == truncate_ms(cert.expires_at)

	def test_file_permissions(self, storage, cert_factory):
		storage.save_certificate(cert_factory(["cert.test"]))
		assert _mode(storage.cert_path) == 0o644
		assert _mode(storage.key_path) == 0o600
		assert _mode(storage.fullchain_path) == 0o644
		assert _mode(storage.metadata_path) == 0o644

	def test_metadata_document(self, storage, cert_factory):
		storage.save_certificate(cert_factory(["cert.test"]))
		metadata = json.loads(storage.metadata_path.read_text())
		assert metadata["domains"] == ["cert.test"]
		assert metadata["issuedAt"].endswith("Z")
		assert metadata["expiresAt"].endswith("Z")

	def test_backups_preserve_previous_copy(self, storage, cert_factory):
		old = cert_factory(["cert.test"])
		new = cert_factory(["cert.test"])
		storage.save_certificate(old)
		storage.save_certificate(new)

		assert (storage.storage_path / "cert.pem.backup").read_bytes() == old.certificate
		assert (storage.storage_path / "key.pem.backup").read_bytes() == old.private_key
		assert storage.cert_path.read_bytes() == new.certificate

	def test_first_save_has_no_backup(self, storage, cert_factory):
		storage.save_certificate(cert_factory(["cert.test"]))
		assert not (storage.storage_path / "cert.pem.backup").exists()

	def test_stale_fullchain_removed(self, storage, cert_factory):
		storage.save_certificate(cert_factory(["cert.test"]))
		storage.save_certificate(replace(cert_factory(["cert.test"]), fullchain=None))
		assert not storage.fullchain_path.exists()
		assert storage.tls_files() == (storage.cert_path, storage.key_path)

	def test_metadata_reconstructed_from_certificate(self, storage, cert_factory):
		cert = cert_factory(["cert.test", "alt.cert.test"])
		storage.save_certificate(cert)
		storage.metadata_path.unlink()

		loaded = storage.load_certificate()
		assert loaded.domains == ["cert.test", "alt.cert.test"]
		assert loaded.issued_at == cert.issued_at
		assert loaded.expires_at == cert.expires_at

	def test_corrupt_metadata_falls_back_to_certificate(self, storage, cert_factory):
		storage.save_certificate(cert_factory(["cert.test"]))
		storage.metadata_path.write_text("{not json")
		assert storage.load_certificate().domains == ["cert.test"]

	def test_tls_files_prefers_fullchain(self, storage, cert_factory):
		assert storage.tls_files() is None
		storage.save_certificate(cert_factory(["cert.test"]))
		assert storage.tls_files() == (storage.fullchain_path, storage.key_path)

	def test_validity_bounds_are_inclusive(self, cert_factory):
		cert = cert_factory(["cert.test"])
		assert cert.is_valid(cert.issued_at)
		assert cert.is_valid(cert.expires_at)
		assert not cert.is_valid(cert.expires_at + timedelta(milliseconds=1))
		assert not cert.is_valid(cert.issued_at - timedelta(milliseconds=1))


class TestAtomicWrite:
	"""Crash safety of the write-then-rename primitive."""

	def test_no_temp_files_after_success(self, tmp_path):
		target = tmp_path / "file.pem"
		atomic.atomic_write(target, b"data")
		assert [p.name for p in tmp_path.iterdir()] == ["file.pem"]

	def test_temp_name_format(self, tmp_path):
		name = atomic.temp_path_for(tmp_path / "cert.pem").name
		prefix, pid, stamp, rand = name.rsplit("-", 3)
		assert prefix == "cert.pem.tmp"
		assert pid == str(os.getpid())
		assert stamp.isdigit()
		assert len(rand) == 8

	@pytest.mark.parametrize("failing_call", [1, 2], ids=["cert", "key"])
	def test_failed_rename_leaves_committed_files(self, storage, cert_factory, monkeypatch, failing_call):
		"""A failure on either rename keeps the old cert/key pair and removes the orphaned temp file."""
		old = cert_factory(["cert.test"])
		storage.save_certificate(old)
		real_replace = atomic.os.replace
		calls = []

		def _boom(src, dst):
			calls.append(dst)
			if len(calls) == failing_call:
				raise OSError("disk full")
			real_replace(src, dst)

		monkeypatch.setattr(atomic.os, "replace", _boom)
		with pytest.raises(OSError, match="disk full"):
			storage.save_certificate(cert_factory(["cert.test"]))
		monkeypatch.undo()

		assert storage.cert_path.read_bytes() == old.certificate
		assert storage.key_path.read_bytes() == old.private_key
		assert not [p for p in storage.storage_path.iterdir() if ".tmp-" in p.name]
		assert storage.load_certificate().certificate == old.certificate

	def test_failed_key_write_on_first_save_removes_certificate(self, storage, cert_factory, monkeypatch):
		real_replace = atomic.os.replace

		def _fail_key(src, dst):
			if Path(dst).name == "key.pem":
				raise OSError("disk full")
			real_replace(src, dst)

		monkeypatch.setattr(atomic.os, "replace", _fail_key)
		with pytest.raises(OSError, match="disk full"):
			storage.save_certificate(cert_factory(["cert.test"]))
		monkeypatch.undo()

		assert not storage.cert_path.exists()
		assert storage.load_certificate() is None

	def test_failed_unlink_is_logged_not_raised(self, tmp_path, monkeypatch, caplog):
		def _fail_replace(src, dst):
			raise OSError("rename failed")

		monkeypatch.setattr(atomic.os, "replace", _fail_replace)
		original_unlink = type(tmp_path).unlink

		def _unlink(self, missing_ok=False):
			if ".tmp-" in self.name:
				raise PermissionError("nope")
			return original_unlink(self, missing_ok=missing_ok)

		monkeypatch.setattr(type(tmp_path), "unlink", _unlink)
		with pytest.raises(OSError, match="rename failed"):
			atomic.atomic_write(tmp_path / "file.pem", b"data")
		assert "Failed to remove temp file" in caplog.text
