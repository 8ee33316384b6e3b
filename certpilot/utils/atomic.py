#!/usr/bin/env python3
#
# certpilot/utils/atomic.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Crash-safe file writes (temp file in the same directory, then rename)."""

from __future__ import annotations

import logging
import os
import secrets
import time
from pathlib import Path

_log = logging.getLogger(__name__)

__all__ = ["atomic_write", "temp_path_for"]


def temp_path_for(path: Path) -> Path:
	"""Return a unique sibling temp path: ``{name}.tmp-{pid}-{ms}-{hex}``."""
	stamp = int(time.time() * 1000)
	return path.with_name(f"{path.name}.tmp-{os.getpid()}-{stamp}-{secrets.token_hex(4)}")


def _fsync_dir(directory: Path) -> None:
	"""Persist the rename itself (best-effort, not supported everywhere)."""
	try:
		fd = os.open(str(directory), os.O_RDONLY)
	except OSError:
		return
	try:
		os.fsync(fd)
	except OSError:
		pass
	finally:
		os.close(fd)


def atomic_write(path: Path, data: bytes, mode: int = 0o644) -> None:
	"""Atomically replace ``path`` with ``data`` and set ``mode``.

	Readers observe either the previous file or the new one, never a
	partial write. On failure the temp file is removed (a failed unlink is
	logged) and the original error is re-raised.
	"""
	tmp_path = temp_path_for(path)
	fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
	try:
		try:
			os.fchmod(fd, mode)
			view = memoryview(data)
			while view:
				written = os.write(fd, view)
				view = view[written:]
			os.fsync(fd)
		finally:
			os.close(fd)
		os.replace(tmp_path, path)
	except Exception:
		try:
			tmp_path.unlink(missing_ok=True)
		except OSError as exc:
			_log.warning("Failed to remove temp file %s: %s", tmp_path, exc)
		raise
	_fsync_dir(path.parent)
