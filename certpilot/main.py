#!/usr/bin/env python3
#
# certpilot/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .api import acme as acme_api
from .api import cluster as cluster_api
from .api import health as health_api
from .certificates.service import CertificateService
from .middleware import HttpsRedirectMiddleware
from .server import ServerManager
from .utils.config import Config, load_config
from .utils.rate_limit import limiter
from .utils.request_id import RequestIDMiddleware
from .utils.scheduler import Scheduler

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		color = _LOG_COLORS.get(orig_levelname)
		if color:
			record.levelname = f"{color}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the application and embedded uvicorn servers."""
	level = getattr(logging, log_level, logging.INFO)
	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt=_DATE_FORMAT,
		)

	# force=True removes any pre-existing handlers so every logger shares one format
	logging.basicConfig(level=level, handlers=[logging.StreamHandler(sys.stdout)], force=True)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx", "hpack", "watchfiles"):
		logging.getLogger(name).setLevel(logging.WARNING)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Initialize ACME, the watcher and the renewal timer; tear down in reverse."""
	cfg: Config = app.state.cfg
	service: CertificateService = app.state.certificate_service

	# ─── BOOTSTRAP ───────────────────────────────────────────
	await service.initialize()

	scheduler: Scheduler | None = None
	if cfg.certificate.enabled and not cfg.manual_cert_provided:
		scheduler = Scheduler()
		scheduler.add(
			"certificate-check",
			cfg.certificate.check_interval,
			service.scheduled_check,
			initial_delay=cfg.certificate.initial_check_delay,
		)
		await scheduler.start()
	app.state.scheduler = scheduler

	_log.info(
		"CertPilot started (node=%s, cluster=%s, orchestration=%s, pid=%d)",
		cfg.cluster.node_id, cfg.cluster.cluster_name, cfg.cluster.enabled, os.getpid(),
	)

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	if scheduler:
		await scheduler.stop_graceful(timeout=5.0)
	await service.shutdown()
	_log.info("CertPilot shutdown complete")


def create_app(config: Config | None = None) -> FastAPI:
	"""Application factory for CertPilot."""
	cfg = config or load_config()
	_setup_logging(cfg.log_level)

	app = FastAPI(
		title="CertPilot",
		description="Clustered ACME certificate lifecycle service",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url=None,
		redoc_url=None,
	)

	service = CertificateService.from_config(cfg)
	app.state.cfg = cfg
	app.state.certificate_service = service
	app.state.scheduler = None
	app.state.server_manager = ServerManager(app, cfg, service)

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(HttpsRedirectMiddleware)
	app.add_middleware(RequestIDMiddleware)

	# Rate limiting
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

	# ─── ROUTES ──────────────────────────────────────────────
	app.include_router(acme_api.router)
	app.include_router(cluster_api.router, prefix="/cluster")
	app.include_router(health_api.router)

	return app
