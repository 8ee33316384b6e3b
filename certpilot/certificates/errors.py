#!/usr/bin/env python3
#
# certpilot/certificates/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Error taxonomy for the certificate lifecycle and peer protocol."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import httpx


class CertificateError(Exception):
	"""Base class for every error raised by this package."""


class NotInitializedError(CertificateError):
	"""An ACME step was called before ``AcmeClient.initialize()``."""


class InvalidInputError(CertificateError):
	"""Caller supplied unusable input (e.g. no domains to order)."""


class InvalidChallengeTokenError(InvalidInputError):
	"""Challenge token contains characters outside ``[A-Za-z0-9_-]``."""


class AcmeProtocolError(CertificateError):
	"""The CA rejected a request or returned something unexpected."""

	def __init__(
		self,
		message: str,
		*,
		status_code: Optional[int] = None,
		problem_type: str = "",
		detail: str = "",
	) -> None:
		super().__init__(message)
		self.status_code = status_code
		self.problem_type = problem_type
		self.detail = detail


class PeerAuthError(CertificateError):
	"""Inbound peer request failed authentication.

	``reason`` is one of the coarse categories exposed to the caller:
	``not configured``, ``missing``, ``invalid timestamp``, ``invalid signature``.
	"""

	def __init__(self, reason: str) -> None:
		super().__init__(reason)
		self.reason = reason


# ---------------------------------------------------------------------------
# Transport error classification
# ---------------------------------------------------------------------------

TransportErrorKind = Literal["timeout", "http", "transport"]


@dataclass(frozen=True)
class TransportFailure:
	"""Transport-agnostic description of a failed outbound HTTP call."""
	kind: TransportErrorKind
	status_code: Optional[int] = None
	message: str = ""

	def __str__(self) -> str:
		if self.kind == "http":
			return f"http {self.status_code}"
		return f"{self.kind}: {self.message}" if self.message else self.kind


def classify_http_error(exc: BaseException) -> TransportFailure:
	"""Map an httpx exception into ``timeout`` / ``http <status>`` / ``transport``.

	Internal code inspects the returned value instead of httpx exception types.
	"""
	if isinstance(exc, httpx.TimeoutException):
		return TransportFailure("timeout", message=type(exc).__name__)
	if isinstance(exc, httpx.HTTPStatusError):
		return TransportFailure("http", status_code=exc.response.status_code)
	return TransportFailure("transport", message=str(exc) or type(exc).__name__)
