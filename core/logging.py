from __future__ import annotations

import copy
import json
import sys
import time
from typing import Any, Dict, Optional

from loguru import logger


# Compared lower-cased, so "apiKey", "APIKEY" and "apikey" all match
SENSITIVE_FIELDS = frozenset(
	{
		"password",
		"api_key",
		"apikey",
		"targetapikey",
		"n8n_api_key",
		"x-n8n-api-key",
		"authorization",
		"secret",
		"clientsecret",
		"token",
		"accesstoken",
		"refreshtoken",
		"privatekey",
		"value",  # variable values
		"data",  # credential payloads
	}
)

REDACTED = "[REDACTED]"
MAX_DEPTH = 10


def is_sensitive(key: Any) -> bool:
	return isinstance(key, str) and key.lower() in SENSITIVE_FIELDS


def _sanitize_dict(obj: Any, depth: int = 0) -> Any:
	"""
	Return a copy of obj with every sensitive key's value replaced.

	Dicts, lists and tuples are walked up to MAX_DEPTH levels; anything
	deeper collapses to a marker string.
	"""
	if depth > MAX_DEPTH:
		return "[MAX_DEPTH_EXCEEDED]"

	if isinstance(obj, dict):
		return {
			key: REDACTED if is_sensitive(key) else _sanitize_dict(value, depth + 1)
			for key, value in obj.items()
		}
	if isinstance(obj, (list, tuple)):
		return [_sanitize_dict(item, depth + 1) for item in obj]
	return obj


def configure_logging(
	level: str = "info",
	audit_log_path: Optional[str] = None,
	serialize: bool = True,
) -> None:
	# stdout carries the stdio protocol stream, so logs go to stderr
	logger.remove()
	logger.add(sys.stderr, level=level.upper(), serialize=serialize, enqueue=True)
	if audit_log_path:
		logger.add(
			audit_log_path,
			level="INFO",
			serialize=True,
			enqueue=True,
			rotation="10 MB",
			retention=5,
			filter=lambda record: record["extra"].get("audit", False),
		)
	logger.debug("Logging configured at {} (audit file: {})", level.upper(), audit_log_path or "off")


def audit_log(event: str, actor: str, details: Dict[str, Any], status: str = "ok") -> None:
	"""
	Emit one audit record for a write against n8n.

	Args:
		event: Tool or action name, e.g. "create_credential"
		actor: Connection id of the caller, or "mcp"
		details: Free-form context; redacted before it is logged
		status: "ok" or a failure label
	"""
	entry = {
		"event": event,
		"actor": actor,
		"status": status,
		"details": _sanitize_dict(copy.deepcopy(details)),
		"timestamp": int(time.time() * 1000),
	}
	logger.bind(audit=True, event=event, actor=actor).info(json.dumps(entry, default=str))
