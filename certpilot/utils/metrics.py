#!/usr/bin/env python3
#
# certpilot/utils/metrics.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process counters and gauges for the certificate lifecycle."""

from __future__ import annotations

import threading

CERT_DAYS_UNTIL_EXPIRY = "certificate.days_until_expiry"
CERT_RENEWAL_ATTEMPTS = "certificate.renewal_attempts"
CERT_RENEWAL_SUCCESS = "certificate.renewal_success"
CERT_RENEWAL_FAILURES = "certificate.renewal_failures"


class Metrics:
	"""Thread-safe registry of monotonically increasing counters and gauges."""

	def __init__(self) -> None:
		self._lock = threading.Lock()
		self._counters: dict[str, float] = {}
		self._gauges: dict[str, float] = {}

	def increment(self, name: str, value: float = 1) -> None:
		with self._lock:
			self._counters[name] = self._counters.get(name, 0) + value

	def set(self, name: str, value: float) -> None:
		with self._lock:
			self._gauges[name] = value

	def get(self, name: str) -> float | None:
		"""Return a counter or gauge value, or None if never written."""
		with self._lock:
			if name in self._counters:
				return self._counters[name]
			return self._gauges.get(name)

	def snapshot(self) -> dict[str, dict[str, float]]:
		with self._lock:
			return {"counters": dict(self._counters), "gauges": dict(self._gauges)}

	def reset(self) -> None:
		with self._lock:
			self._counters.clear()
			self._gauges.clear()


metrics = Metrics()

__all__ = [
	"CERT_DAYS_UNTIL_EXPIRY",
	"CERT_RENEWAL_ATTEMPTS",
	"CERT_RENEWAL_FAILURES",
	"CERT_RENEWAL_SUCCESS",
	"Metrics",
	"metrics",
]
