#!/usr/bin/env python3
#
# certpilot/cluster/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Multi-node coordination: leadership lock, peer auth and replication."""

from .leadership import LeadershipCoordinator
from .peer_auth import require_peer_auth, sign_peer_headers, verify_peer_request
from .replicator import PeerReplicator, ReplicationReport

__all__ = [
	"LeadershipCoordinator",
	"PeerReplicator",
	"ReplicationReport",
	"require_peer_auth",
	"sign_peer_headers",
	"verify_peer_request",
]
