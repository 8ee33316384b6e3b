#!/usr/bin/env python3
#
# certpilot/middleware/https_redirect.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Redirect plaintext traffic to the TLS listener once it is up."""

from __future__ import annotations

from typing import Callable

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

# Always served over plaintext: ACME validation, peer sync, load balancer probes
EXEMPT_PREFIXES = ("/.well-known/acme-challenge/", "/cluster/")
EXEMPT_PATHS = ("/health",)


def _strip_port(host: str) -> str:
	host = host.strip().lower()
	if host.startswith("["):
		return host.split("]", 1)[0] + "]"
	return host.rsplit(":", 1)[0] if ":" in host else host


class HttpsRedirectMiddleware(BaseHTTPMiddleware):
	"""301 plaintext requests to HTTPS for known certificate hosts.

	Only active when TLS is enabled and the TLS listener is running. The
	Host header must name a domain of the served certificate; anything
	else gets 400 so the redirect cannot be pointed at arbitrary hosts.
	"""

	def _is_exempt(self, path: str) -> bool:
		return path in EXEMPT_PATHS or path.startswith(EXEMPT_PREFIXES)

	async def dispatch(self, request: Request, call_next: Callable) -> Response:
		manager = getattr(request.app.state, "server_manager", None)
		cfg = request.app.state.cfg
		if (
			manager is None
			or not cfg.server.https_enabled
			or not manager.tls_running
			or request.url.scheme == "https"
			or self._is_exempt(request.url.path)
		):
			return await call_next(request)

		host = _strip_port(request.headers.get("host", ""))
		if not host or host not in manager.tls_domains:
			return PlainTextResponse("Invalid host header", status_code=400)

		port = cfg.server.https_port
		netloc = host if port == 443 else f"{host}:{port}"
		target = f"https://{netloc}{request.url.path}"
		if request.url.query:
			target += f"?{request.url.query}"
		return RedirectResponse(target, status_code=301)
