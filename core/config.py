from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from core.errors import InitializationError
from core.resilience import RetryPolicy


TRANSPORTS = ("stdio", "http")


def _env_number(name: str, default: str, cast: type = int) -> float:
	raw = os.getenv(name, default)
	try:
		value = cast(raw)
	except ValueError:
		raise InitializationError(
			f"{name} must be a number, got {raw!r}", {"variable": name}
		) from None
	if value <= 0:
		raise InitializationError(f"{name} must be positive", {"variable": name})
	return value


@dataclass(frozen=True)
class Settings:
	"""Environment-driven configuration for the gateway."""

	# n8n
	n8n_api_url: str
	n8n_api_key: str

	# ops
	log_level: str = "info"
	audit_log_path: Optional[str] = None

	# transport
	transport: str = "stdio"
	http_host: str = "0.0.0.0"
	http_port: int = 3000

	# connection pool (seconds)
	max_connections: int = 100
	connection_timeout: float = 300.0
	sweep_interval: float = 60.0

	# tool calls
	tool_timeout: float = 30.0
	max_retries: int = 3
	retry_base_delay: float = 1.0

	def retry_policy(self) -> RetryPolicy:
		return RetryPolicy(
			max_retries=self.max_retries,
			base_delay=self.retry_base_delay,
			timeout=self.tool_timeout,
		)

	@staticmethod
	def load_from_env() -> "Settings":
		n8n_api_url = (
			os.getenv("N8N_API_URL") or os.getenv("N8N_URL") or "http://localhost:5678"
		).rstrip("/")
		n8n_api_key = os.getenv("N8N_API_KEY", "")

		if not n8n_api_key:
			raise InitializationError(
				"N8N_API_KEY must be set in environment", {"variable": "N8N_API_KEY"}
			)

		transport = os.getenv("MCP_TRANSPORT", "stdio").lower()
		if transport not in TRANSPORTS:
			raise InitializationError(
				f"MCP_TRANSPORT must be one of {', '.join(TRANSPORTS)}",
				{"variable": "MCP_TRANSPORT"},
			)

		return Settings(
			n8n_api_url=n8n_api_url,
			n8n_api_key=n8n_api_key,
			log_level=os.getenv("LOG_LEVEL", "info"),
			audit_log_path=os.getenv("AUDIT_LOG_PATH"),
			transport=transport,
			http_host=os.getenv("HTTP_HOST", "0.0.0.0"),
			http_port=int(_env_number("HTTP_PORT", "3000")),
			max_connections=int(_env_number("MAX_CONNECTIONS", "100")),
			connection_timeout=_env_number("CONNECTION_TIMEOUT", "300", float),
			sweep_interval=_env_number("SWEEP_INTERVAL", "60", float),
			tool_timeout=_env_number("TOOL_TIMEOUT", "30", float),
			max_retries=int(_env_number("TOOL_MAX_RETRIES", "3")),
			retry_base_delay=_env_number("RETRY_BASE_DELAY", "1.0", float),
		)
