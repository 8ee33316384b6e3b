#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# CertPilot - clustered ACME certificate lifecycle service
# Local entry point: plaintext + TLS listeners in one process
#

from certpilot.server import run

if __name__ == "__main__":
	run()
