"""
Configuration module - YAML settings, secrets from env or 1Password
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, urlparse, urlunparse

import yaml

from helper import get_network_passphrase, is_supported_network

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "facilitator.config.yaml"
IDEMPOTENCY_BACKENDS = ("memory", "database")
PLACEHOLDER_TOKENS = ("your-op-token", "your-service-account-token")


def _resolve_config_path(config_path: Optional[str]) -> str:
    """Explicit path, then CONFIG_PATH, then <root>/config/, then <root>/."""
    if config_path is None:
        config_path = os.getenv("CONFIG_PATH")
    if config_path is not None:
        return config_path

    project_root = Path(__file__).parent.parent
    for candidate in (project_root / "config" / CONFIG_FILENAME, project_root / CONFIG_FILENAME):
        if candidate.exists():
            return str(candidate)
    return str(project_root / CONFIG_FILENAME)


def _with_password(url: str, password: str) -> str:
    parsed = urlparse(url)
    # the password may contain URL-reserved characters
    credentials = f"{parsed.username or ''}:{quote(password, safe='')}"
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=f"{credentials}@{host}"))


class Config:
    """Application configuration"""

    def __init__(self):
        self._config: dict = {}
        self._database_password: Optional[str] = None
        self._loaded: bool = False

    def load_from_yaml(self, config_path: Optional[str] = None) -> None:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to config file. If None, CONFIG_PATH is used,
                else config/facilitator.config.yaml, else facilitator.config.yaml
                in the project root.

        Raises:
            FileNotFoundError: If no configuration file exists at the resolved path.
            ValueError: If required settings are missing or invalid.
        """
        if self._loaded and config_path is None:
            return

        path = _resolve_config_path(config_path)
        if not os.path.exists(path):
            raise FileNotFoundError(
                f"Configuration file not found at {path}. "
                f"Create {CONFIG_FILENAME} in the project root or config/ directory, "
                "or set CONFIG_PATH."
            )
        logger.info(f"Loading configuration from {path}")

        with open(path, "r") as f:
            self._config = yaml.safe_load(f) or {}

        self._validate_required()
        self._loaded = True

    def _validate_required(self) -> None:
        """
        Collect every problem with the loaded settings and raise them together.
        A ValueError here stops the service at startup.
        """
        errors = []
        networks_cfg = self._section("facilitator").get("networks")
        if not isinstance(networks_cfg, dict) or not networks_cfg:
            errors.append("facilitator.networks is required and must map network ids to settings")
        else:
            for network_id, settings in networks_cfg.items():
                if not is_supported_network(network_id):
                    errors.append(f"facilitator.networks.{network_id} is not a supported Stellar network")
                if not (settings or {}).get("rpc_url"):
                    errors.append(f"facilitator.networks.{network_id}.rpc_url is required")

        backend = self.idempotency_backend
        if backend not in IDEMPOTENCY_BACKENDS:
            errors.append(f"idempotency.backend must be one of {', '.join(IDEMPOTENCY_BACKENDS)}")
        elif backend == "database" and not self.database_url:
            errors.append("database.url is required when idempotency.backend is 'database'")

        if errors:
            raise ValueError("Configuration validation failed. " + " ".join(errors))

    def _section(self, name: str) -> dict:
        return self._config.get(name) or {}

    def _get(self, section: str, key: str, default: Any = None) -> Any:
        return self._section(section).get(key, default)

    # ---- Networks ----
    def _network_config(self, network_id: str) -> dict:
        """Settings of one network (facilitator.networks[network_id]), {} when absent."""
        networks = self._section("facilitator").get("networks") or {}
        return networks.get(network_id) or {}

    @property
    def networks(self) -> list[str]:
        """Enabled network ids, in file order"""
        networks = self._section("facilitator").get("networks")
        return list(networks) if isinstance(networks, dict) else []

    @property
    def default_network(self) -> str:
        """Network reported on settle responses that cannot be attributed to one"""
        networks = self.networks
        return networks[0] if networks else "stellar-testnet"

    def get_rpc_url(self, network_id: str) -> str:
        return self._network_config(network_id).get("rpc_url", "")

    def get_network_passphrase(self, network_id: str) -> str:
        """Configured passphrase override, else the well-known passphrase of the network."""
        override = self._network_config(network_id).get("network_passphrase")
        return override or get_network_passphrase(network_id) or ""

    def get_request_timeout(self, network_id: str) -> float:
        return float(self._network_config(network_id).get("request_timeout", 10))

    # ---- Settlement ----
    @property
    def settlement_default_timeout(self) -> float:
        """Budget used when requirements carry maxTimeoutSeconds=0. Default 60."""
        return float(self._get("settlement", "default_timeout_seconds", 60))

    @property
    def settlement_poll_interval(self) -> float:
        return float(self._get("settlement", "poll_interval", 1.0))

    @property
    def settlement_retry_initial_backoff(self) -> float:
        return float(self._get("settlement", "retry_initial_backoff", 0.25))

    @property
    def settlement_retry_max_backoff(self) -> float:
        return float(self._get("settlement", "retry_max_backoff", 4.0))

    # ---- Idempotency ----
    @property
    def idempotency_backend(self) -> str:
        """memory (single process) or database (shared across workers)"""
        return str(self._get("idempotency", "backend", "memory")).lower()

    @property
    def idempotency_stale_after(self) -> float:
        """Seconds after which a pending database record may be taken over"""
        return float(self._get("idempotency", "stale_after_seconds", 300))

    @property
    def idempotency_max_records(self) -> int:
        """Terminal records kept by the memory backend"""
        return int(self._get("idempotency", "max_records", 100_000))

    # ---- Database ----
    @property
    def database_url(self) -> str:
        """Connection URL as written in the file; the password may be injected later"""
        return self._get("database", "url", "")

    @property
    def database_ssl_mode(self) -> str:
        """disable | require | verify-ca | verify-full"""
        return self._get("database", "ssl_mode", "disable")

    @property
    def database_max_open_conns(self) -> int:
        """pool_size + max_overflow"""
        return int(self._get("database", "max_open_conns", 25))

    @property
    def database_max_idle_conns(self) -> int:
        """pool_size"""
        return int(self._get("database", "max_idle_conns", 15))

    @property
    def database_max_life_time(self) -> int:
        """pool_recycle, in seconds"""
        return int(self._get("database", "max_life_time", 600))

    # ---- 1Password ----
    @property
    def onepassword_token(self) -> Optional[str]:
        """Service account token: OP_SERVICE_ACCOUNT_TOKEN, else onepassword.token."""
        return os.getenv("OP_SERVICE_ACCOUNT_TOKEN") or self._get("onepassword", "token")

    def _get_op_ref(self, key: str) -> str:
        """'vault/item/field' reference stored under onepassword.<key>, or ''."""
        value = self._get("onepassword", key)
        return value.strip() if isinstance(value, str) else ""

    # ---- Server ----
    @property
    def server_host(self) -> str:
        return self._get("server", "host", "0.0.0.0")

    @property
    def server_port(self) -> int:
        return self._get("server", "port", 8001)

    @property
    def server_workers(self) -> int:
        """More than one worker needs the database idempotency backend"""
        return int(self._get("server", "workers", 1))

    @property
    def logging_config(self) -> dict:
        return self._section("logging")

    @property
    def rate_limit_settle(self) -> str:
        """Per-client limit on /settle"""
        return self._get("rate_limit", "settle", "120/minute")

    @property
    def rate_limit_verify(self) -> str:
        """Per-client limit on /verify"""
        return self._get("rate_limit", "verify", "600/minute")

    @property
    def monitoring_port(self) -> int:
        """Metrics port; the server port unless set"""
        return self._get("monitoring", "port", self.server_port)

    @property
    def monitoring_endpoint(self) -> str:
        return self._get("monitoring", "endpoint", "/metrics")

    async def get_database_password(self) -> Optional[str]:
        """
        Database password, resolved once and cached.

        Sources, first match wins: DATABASE_PASSWORD, database.password,
        then 1Password via onepassword.database_password.

        Returns:
            None when no source is configured (the URL may carry the password itself)
        """
        if self._database_password is not None:
            return self._database_password

        password = os.getenv("DATABASE_PASSWORD")
        if not password:
            direct = self._get("database", "password")
            password = str(direct) if direct not in (None, "") else None
        if not password:
            ref = self._get_op_ref("database_password")
            token = self.onepassword_token
            if not ref or not token or token in PLACEHOLDER_TOKENS:
                return None
            from onepassword_client import resolve_secret
            password = await resolve_secret(ref, token=token)

        self._database_password = password
        return password

    async def get_database_url(self) -> str:
        """Database URL with the resolved password injected, when there is one."""
        raw_url = self.database_url
        if not raw_url:
            raise ValueError("database.url is required")

        password = await self.get_database_password()
        return _with_password(raw_url, password) if password else raw_url


# Global config instance
config = Config()
