#!/usr/bin/env python3
#
# certpilot/certificates/models.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate value type and peer/status wire models."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..utils.time import utcnow

_SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class Certificate:
	"""Issued TLS identity. Superseded by the next renewal, never mutated."""
	private_key: bytes
	certificate: bytes
	domains: list[str]
	issued_at: datetime
	expires_at: datetime
	chain: Optional[bytes] = None
	fullchain: Optional[bytes] = None

	@property
	def primary_domain(self) -> Optional[str]:
		return self.domains[0] if self.domains else None

	def is_valid(self, now: Optional[datetime] = None) -> bool:
		now = now or utcnow()
		return self.issued_at <= now <= self.expires_at

	def days_until_expiry(self, now: Optional[datetime] = None) -> int:
		now = now or utcnow()
		return math.floor((self.expires_at - now).total_seconds() / _SECONDS_PER_DAY)

	def covers(self, required_domains: Iterable[str]) -> bool:
		"""True if every required domain is present (order-insensitive)."""
		have = {d.lower() for d in self.domains}
		return all(d.lower() in have for d in required_domains)


# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
	model_config = ConfigDict(populate_by_name=True)


class CertificateStatus(_CamelModel):
	"""Certificate status for health and cluster status consumers."""
	exists: bool
	valid: bool
	domain: Optional[str] = None
	issued_at: Optional[str] = Field(default=None, alias="issuedAt")
	expires_at: Optional[str] = Field(default=None, alias="expiresAt")
	days_until_expiry: Optional[int] = Field(default=None, alias="daysUntilExpiry")

	def to_wire(self) -> dict:
		return self.model_dump(by_alias=True, exclude_none=True)


class ChallengeSyncRequest(_CamelModel):
	"""Peer-pushed HTTP-01 challenge response."""
	token: str = Field(..., min_length=1, max_length=256)
	key_auth: str = Field(..., min_length=1, max_length=1024, alias="keyAuth")


class CertificateMetadata(_CamelModel):
	domains: list[str] = Field(..., min_length=1)
	issued_at: str = Field(..., alias="issuedAt")
	expires_at: str = Field(..., alias="expiresAt")


class CertificateSyncRequest(_CamelModel):
	"""Peer-pushed certificate; binary fields are base64 encoded."""
	certificate: str = Field(..., min_length=1)
	private_key: str = Field(..., min_length=1, alias="privateKey")
	chain: Optional[str] = None
	fullchain: Optional[str] = None
	metadata: CertificateMetadata
