"""Runtime settings for the FHEVM session helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

SDK_LOCAL_SOURCE = "relayer_sdk"
SDK_CDN_URL = "https://cdn.zama.ai/relayer-sdk-py/0.2.0/relayer_sdk.py"
LOCAL_CHAIN_ID = 31337
LOCAL_RPC_URL = "http://localhost:8545"
DEFAULT_MOCK_CHAINS: Dict[int, str] = {LOCAL_CHAIN_ID: LOCAL_RPC_URL}
DEFAULT_PERMIT_DURATION_DAYS = 365
PUBLIC_PARAMS_BITS = 2048


def _parse_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw, 0)
    except ValueError:
        logger.warning("Invalid integer for %s: %s", name, raw)
        return default
    return value


def _parse_json_env(name: str) -> Optional[Dict[str, Any]]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Failed to decode JSON payload for %s", name)
        return None
    if isinstance(parsed, dict):
        return parsed
    logger.warning("Expected JSON object for %s, received %s", name, type(parsed).__name__)
    return None


def parse_mock_chains(raw: Optional[Mapping[Any, Any]]) -> Dict[int, str]:
    """Normalise a ``{chainId: rpcUrl}`` mapping, accepting string or hex keys."""

    chains: Dict[int, str] = {}
    for key, value in (raw or {}).items():
        try:
            chain_id = int(key, 0) if isinstance(key, str) else int(key)
        except (TypeError, ValueError):
            raise ValueError(f"mock chain id must be an integer, got {key!r}") from None
        if chain_id <= 0:
            raise ValueError("mock chain ids must be positive")
        chains[chain_id] = "" if value is None else str(value)
    return chains


@dataclass
class SessionSettings:
    """Where to find the relayer SDK and how to treat local networks."""

    mock_chains: Dict[int, str] = field(default_factory=dict)
    sdk_local_source: Optional[str] = SDK_LOCAL_SOURCE
    sdk_cdn_url: Optional[str] = SDK_CDN_URL
    sdk_cache_dir: Path = field(default_factory=lambda: Path("storage/fhevm/sdk"))
    public_params_dir: Optional[Path] = field(default_factory=lambda: Path("storage/fhevm/public-params"))
    mock_module: str = "fhevm_mock_utils"
    rpc_timeout: float = 10.0
    permit_duration_days: int = DEFAULT_PERMIT_DURATION_DAYS

    def __post_init__(self) -> None:
        self.mock_chains = parse_mock_chains(self.mock_chains)
        if not self.sdk_local_source and not self.sdk_cdn_url:
            raise ValueError("at least one relayer SDK source must be configured")
        self.sdk_cache_dir = Path(self.sdk_cache_dir)
        if self.public_params_dir is not None:
            self.public_params_dir = Path(self.public_params_dir)
        if not isinstance(self.mock_module, str) or not self.mock_module:
            raise ValueError("mock_module must be a non-empty module name")
        if self.rpc_timeout <= 0:
            raise ValueError("rpc_timeout must be positive")
        if not isinstance(self.permit_duration_days, int) or self.permit_duration_days <= 0:
            raise ValueError("permit_duration_days must be a positive integer")

    def merged_mock_chains(self, overrides: Optional[Mapping[int, str]] = None) -> Dict[int, str]:
        """Return the default local chain table with settings and call overrides applied."""

        merged = dict(DEFAULT_MOCK_CHAINS)
        merged.update(self.mock_chains)
        merged.update(parse_mock_chains(overrides))
        return merged

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SessionSettings":
        def _resolve(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return default

        kwargs: Dict[str, Any] = {
            "mock_chains": _resolve("mock_chains", "mockChains", default={}) or {},
        }
        optional = {
            "sdk_local_source": ("sdk_local_source", "sdkLocalSource"),
            "sdk_cdn_url": ("sdk_cdn_url", "sdkCdnUrl"),
            "sdk_cache_dir": ("sdk_cache_dir", "sdkCacheDir"),
            "public_params_dir": ("public_params_dir", "publicParamsDir"),
            "mock_module": ("mock_module", "mockModule"),
        }
        for name, keys in optional.items():
            sentinel = object()
            value = _resolve(*keys, default=sentinel)
            if value is not sentinel:
                kwargs[name] = value
        timeout = _resolve("rpc_timeout", "rpcTimeout")
        if timeout is not None:
            kwargs["rpc_timeout"] = float(timeout)
        duration = _resolve("permit_duration_days", "permitDurationDays")
        if duration is not None:
            kwargs["permit_duration_days"] = int(duration)
        return cls(**kwargs)

    @classmethod
    def from_env(cls) -> "SessionSettings":
        settings = cls(mock_chains=parse_mock_chains(_parse_json_env("FHEVM_MOCK_CHAINS")))
        local_source = os.getenv("FHEVM_SDK_LOCAL_SOURCE")
        if local_source is not None:
            settings.sdk_local_source = local_source or None
        cdn_url = os.getenv("FHEVM_SDK_CDN_URL")
        if cdn_url is not None:
            settings.sdk_cdn_url = cdn_url or None
        cache_dir = os.getenv("FHEVM_SDK_CACHE_DIR")
        if cache_dir:
            settings.sdk_cache_dir = Path(cache_dir)
        params_dir = os.getenv("FHEVM_PUBLIC_PARAMS_DIR")
        if params_dir is not None:
            # An empty value disables the public parameter cache.
            settings.public_params_dir = Path(params_dir) if params_dir else None
        mock_module = os.getenv("FHEVM_MOCK_MODULE")
        if mock_module:
            settings.mock_module = mock_module
        timeout_ms = _parse_int_env("FHEVM_RPC_TIMEOUT_MS")
        if timeout_ms:
            settings.rpc_timeout = max(0.5, timeout_ms / 1000)
        duration = _parse_int_env("FHEVM_PERMIT_DURATION_DAYS")
        if duration and duration > 0:
            settings.permit_duration_days = duration
        if not settings.sdk_local_source and not settings.sdk_cdn_url:
            raise ValueError("at least one relayer SDK source must be configured")
        return settings


def load_settings(path: str | Path) -> SessionSettings:
    """Load settings from a YAML or JSON document."""

    text = Path(path).read_text(encoding="utf-8")
    data = yaml.safe_load(text) if text.strip() else {}
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("FHEVM session settings must be a mapping")
    return SessionSettings.from_mapping(data)
