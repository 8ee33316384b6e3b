#!/usr/bin/env python3
#
# certpilot/certificates/watcher.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Watch cert.pem / key.pem and emit a reload once writes have settled."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from .events import CertificateEvents
from .storage import CertificateStorage

_log = logging.getLogger(__name__)


class CertificateWatcher:
	"""Debounced filesystem watcher for the active certificate files.

	Raw change notifications feed a coalescing stage: every change restarts
	a ``stability_ms`` timer and only the expiry of that timer triggers a
	reload. A multi-file atomic save is therefore observed once.
	"""

	def __init__(
		self,
		storage: CertificateStorage,
		events: CertificateEvents,
		*,
		enabled: bool = True,
		stability_ms: int = 2000,
	):
		self.storage = storage
		self.events = events
		self.enabled = enabled
		self.stability_ms = stability_ms
		self._watched = {storage.cert_path.name, storage.key_path.name}
		self._stop_event: Optional[asyncio.Event] = None
		self._task: Optional[asyncio.Task] = None
		self._pending: Optional[asyncio.Task] = None

	@property
	def is_watching(self) -> bool:
		return self._task is not None and not self._task.done()

	def _filter(self, change: Change, path: str) -> bool:
		return Path(path).name in self._watched

	async def start_watching(self) -> None:
		"""Start the watch task (no-op when disabled or already running)."""
		if not self.enabled:
			_log.debug("Certificate watcher disabled")
			return
		if self.is_watching:
			return
		self.storage.ensure_directories()
		self._stop_event = asyncio.Event()
		self._task = asyncio.create_task(self._watch_loop(self._stop_event))
		_log.info("Watching %s and %s for changes", self.storage.cert_path, self.storage.key_path)

	async def _watch_loop(self, stop_event: asyncio.Event) -> None:
		try:
			async for changes in awatch(
				self.storage.storage_path,
				watch_filter=self._filter,
				stop_event=stop_event,
				recursive=False,
			):
				_log.debug("Certificate files changed: %s", sorted(Path(p).name for _, p in changes))
				self.notify_change()
		except asyncio.CancelledError:
			raise
		except Exception:
			_log.exception("Certificate watcher stopped unexpectedly")

	def notify_change(self) -> None:
		"""Feed one raw change into the debounce stage."""
		if self._pending is not None and not self._pending.done():
			self._pending.cancel()
		self._pending = asyncio.create_task(self._reload_when_quiet())

	async def _reload_when_quiet(self) -> None:
		await asyncio.sleep(self.stability_ms / 1000)
		await self.reload()

	async def reload(self) -> None:
		"""Load the stored certificate and emit it, or log if none is found."""
		try:
			certificate = self.storage.load_certificate()
		except Exception:
			_log.exception("Failed to reload certificate after file change")
			return
		if certificate is None:
			_log.warning("Certificate files changed but no certificate could be loaded")
			return
		_log.info("Certificate files changed, reloading (domains=%s)", ",".join(certificate.domains))
		self.events.emit(certificate)

	async def stop_watching(self) -> None:
		"""Stop watching. Safe to call repeatedly or without a prior start."""
		if self._stop_event is not None:
			self._stop_event.set()
		for task in (self._pending, self._task):
			if task is not None and not task.done():
				task.cancel()
				await asyncio.gather(task, return_exceptions=True)
		self._pending = None
		self._task = None
		self._stop_event = None
