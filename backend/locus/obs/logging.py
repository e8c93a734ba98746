"""JSON logging with request context and location redaction."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from locus.settings import settings

_CONTEXT_FIELDS = ("request_id", "route", "user_id")
_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("locus_log_context", default={})

_LOGGER_NAME = "locus"
_REDACTED = "[redacted]"

# Location payloads must never reach log sinks in clear.
_SENSITIVE_KEYWORDS = ("token", "secret", "authorization", "password", "latitude", "longitude", "coord", "geohash")
# Short names only match whole snake_case parts, so `latency_ms` survives.
_SENSITIVE_PARTS = frozenset({"lat", "lng", "lon", "geo", "cell"})

_MAX_STRING_LENGTH = 256
_MAX_COLLECTION_ITEMS = 10

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Token:
	"""Layer request-scoped fields over the current context; returns the reset token."""
	merged = dict(_CONTEXT.get())
	for key, value in fields.items():
		if key not in _CONTEXT_FIELDS:
			raise ValueError(f"unknown log context field: {key}")
		if value is not None:
			merged[key] = value
	return _CONTEXT.set(merged)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


def current_request_id() -> Optional[str]:
	return _CONTEXT.get().get("request_id")


def is_sensitive(key: str) -> bool:
	lowered = key.lower()
	if any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS):
		return True
	return bool(_SENSITIVE_PARTS.intersection(lowered.split("_")))


def sanitize_field(key: str, value: Any) -> Any:
	if is_sensitive(key):
		return _REDACTED
	if isinstance(value, str) and len(value) > _MAX_STRING_LENGTH:
		return f"{value[:_MAX_STRING_LENGTH]}…"
	if isinstance(value, Mapping):
		items = list(value.items())
		cleaned = {str(k): sanitize_field(str(k), v) for k, v in items[:_MAX_COLLECTION_ITEMS]}
		if len(items) > _MAX_COLLECTION_ITEMS:
			cleaned["…"] = f"+{len(items) - _MAX_COLLECTION_ITEMS} keys"
		return cleaned
	if isinstance(value, (list, tuple, set, frozenset)):
		values = list(value)
		cleaned_list = [sanitize_field("", item) for item in values[:_MAX_COLLECTION_ITEMS]]
		if len(values) > _MAX_COLLECTION_ITEMS:
			cleaned_list.append("…")
		return cleaned_list
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line; `extra=` fields are sanitised before output."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(_CONTEXT.get())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RECORD_ATTRS or key in payload:
				continue
			payload[key] = sanitize_field(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample info-level records; warnings and errors always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
