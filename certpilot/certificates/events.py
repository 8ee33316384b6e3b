#!/usr/bin/env python3
#
# certpilot/certificates/events.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process "certificate reloaded" notification channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .models import Certificate

_log = logging.getLogger(__name__)

CertificateListener = Callable[[Certificate], Awaitable[None]]


class CertificateEvents:
	"""Single-producer, multi-consumer observer list.

	``emit`` never blocks the producer: each listener runs as its own task,
	and a failing listener is logged without affecting the others. A slow
	listener may receive a certificate that has already been superseded.
	"""

	def __init__(self) -> None:
		self._listeners: list[CertificateListener] = []
		self._tasks: set[asyncio.Task] = set()

	def subscribe(self, listener: CertificateListener) -> Callable[[], None]:
		"""Register ``listener``; returns a callable that unsubscribes it."""
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	def emit(self, certificate: Certificate) -> list[asyncio.Task]:
		"""Schedule every listener with ``certificate``. Requires a running loop."""
		tasks = []
		for listener in list(self._listeners):
			task = asyncio.create_task(self._run(listener, certificate))
			self._tasks.add(task)
			task.add_done_callback(self._tasks.discard)
			tasks.append(task)
		_log.debug("CERT_EVENT reloaded domains=%s listeners=%d", ",".join(certificate.domains), len(tasks))
		return tasks

	async def _run(self, listener: CertificateListener, certificate: Certificate) -> None:
		try:
			await listener(certificate)
		except Exception:
			_log.exception("Certificate reload listener %r failed", listener)

	async def drain(self) -> None:
		"""Wait for in-flight listener tasks (used on shutdown and in tests)."""
		if self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)
