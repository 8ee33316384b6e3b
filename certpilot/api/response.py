#!/usr/bin/env python3
#
# certpilot/api/response.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Response envelopes shared by the peer and health routes."""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse


def _envelope(status: str, message: str | None, data: Any, extra: dict[str, Any]) -> dict[str, Any]:
	payload: dict[str, Any] = {"status": status}
	if message is not None:
		payload["message"] = message
	if data is not None:
		payload["data"] = data
	payload.update(extra)
	return payload


def ok_response(
	*,
	message: str | None = None,
	data: Any = None,
	**extra: Any,
) -> dict[str, Any]:
	"""``{"status": "ok"}`` plus optional message, data and top-level fields."""
	return _envelope("ok", message, data, extra)


def error_response(
	status_code: int,
	*,
	message: str | None = None,
	data: Any = None,
) -> JSONResponse:
	"""Same envelope with ``status: error``, for answers that still carry data (e.g. 503 health)."""
	return JSONResponse(status_code=status_code, content=_envelope("error", message, data, {}))
