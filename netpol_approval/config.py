"""
Gate Configuration
Built once at startup and handed to every component. Values come from the
dataclass defaults, then an optional YAML file, then NETPOL_APPROVAL_*
environment variables (highest precedence).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from netpol_approval.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "OPERATOR_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "/etc/operator-config/config.yaml"
ENV_PREFIX = "NETPOL_APPROVAL_"

DEFAULT_EXCLUDED_NAMESPACES = (
    "kube-system",
    "calico-system",
    "calico-apiserver",
    "kube-node-lease",
    "ingress-nginx",
)

_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


@dataclass(frozen=True)
class GateConfig:
    """Tunables for the admission gate and the reconcilers."""
    request_name_prefix: str = "np-approval"
    signer_name: str = "kubernetes.io/kube-apiserver-client"
    excluded_namespaces: tuple[str, ...] = DEFAULT_EXCLUDED_NAMESPACES
    not_ready_requeue_seconds: float = 30.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    admission_timeout_seconds: float = 10.0
    store_timeout_seconds: float = 5.0
    resync_interval_seconds: float = 60.0
    sweep_interval_seconds: float = 300.0
    log_level: str = "info"
    audit_dsn: Optional[str] = None
    kube_api_url: Optional[str] = None
    listen_host: str = "0.0.0.0"
    listen_port: int = 9443
    tls_cert_file: Optional[str] = None
    tls_key_file: Optional[str] = None

    def __post_init__(self):
        if not self.request_name_prefix:
            raise ConfigError("request_name_prefix must not be empty")
        for name in (
            "not_ready_requeue_seconds",
            "backoff_base_seconds",
            "backoff_max_seconds",
            "admission_timeout_seconds",
            "store_timeout_seconds",
            "resync_interval_seconds",
            "sweep_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ConfigError("backoff_max_seconds must be >= backoff_base_seconds")
        if self.log_level.lower() not in _LOG_LEVELS:
            raise ConfigError(f"unknown log_level {self.log_level!r}")

    def is_excluded(self, namespace: str) -> bool:
        return namespace in self.excluded_namespaces

    # -----------------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------------

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GateConfig:
        """Load the YAML file named by OPERATOR_CONFIG_PATH, then apply env overrides."""
        environ = os.environ if environ is None else environ
        path = Path(environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))
        config = cls.from_file(path)

        overrides: dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                overrides[f.name] = _coerce(f.name, raw, getattr(config, f.name))
        return replace(config, **overrides) if overrides else config

    @classmethod
    def from_file(cls, path: Path) -> GateConfig:
        if not path.exists():
            logger.warning("config file %s not found, using default values", path)
            return cls()
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"fatal error while reading the config file {path}: {exc}") from exc
        if loaded is None:
            return cls()
        if not isinstance(loaded, dict):
            raise ConfigError(f"config file {path} must contain a mapping")
        return cls.from_mapping(loaded)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> GateConfig:
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        unknown: list[str] = []
        defaults = cls()
        for key, value in data.items():
            if key not in known:
                unknown.append(key)
                continue
            if isinstance(value, str):
                value = _coerce(key, value, getattr(defaults, key))
            elif key == "excluded_namespaces":
                if not isinstance(value, list):
                    raise ConfigError("excluded_namespaces must be a list")
                value = tuple(str(ns) for ns in value)
            values[key] = value
        if unknown:
            logger.warning("ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        return cls(**values)


_OPTIONAL_FIELDS = frozenset(f.name for f in fields(GateConfig) if f.default is None)


def _coerce(name: str, raw: str, current: Any) -> Any:
    if name == "excluded_namespaces":
        return tuple(ns.strip() for ns in raw.split(",") if ns.strip())
    if name in _OPTIONAL_FIELDS:
        return raw or None
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc
    if isinstance(current, float):
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc
    return raw


def configure_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
