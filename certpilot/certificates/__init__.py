#!/usr/bin/env python3
#
# certpilot/certificates/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle: ACME driver, storage, watcher and orchestration."""

from .errors import (
	AcmeProtocolError,
	CertificateError,
	InvalidChallengeTokenError,
	InvalidInputError,
	NotInitializedError,
	PeerAuthError,
)
from .models import (
	Certificate,
	CertificateStatus,
	CertificateSyncRequest,
	ChallengeSyncRequest,
)

__all__ = [
	# Errors
	"AcmeProtocolError",
	"CertificateError",
	"InvalidChallengeTokenError",
	"InvalidInputError",
	"NotInitializedError",
	"PeerAuthError",
	# Models
	"Certificate",
	"CertificateStatus",
	"CertificateSyncRequest",
	"ChallengeSyncRequest",
]
