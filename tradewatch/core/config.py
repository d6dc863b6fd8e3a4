"""
Configuration loader for tradewatch.

This module provides Pydantic models for strong validation of settings
and a loader function that merges a YAML configuration file with
environment variables.

Design Principles:
- Strict Schema: All settings are defined in Pydantic models to ensure type
  safety and validate constraints (e.g., value ranges, address shapes).
- Environment Overrides: Any setting can be overridden by an environment
  variable. The override mechanism follows a nested structure, e.g.,
  `transport.telegram.bot_token` can be overridden by the environment
  variable `TRADEWATCH_TRANSPORT__TELEGRAM__BOT_TOKEN`.
- Single Source of Truth: The `load_settings` function is the single entry
  point for accessing configuration, returning a validated `Settings` object.
- Clear Errors: If validation fails, Pydantic raises a detailed `ValidationError`
  which is wrapped in a custom `ConfigError` for clear, actionable feedback.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from tradewatch.core.fixedpoint import NativePrice

ENV_PREFIX = "TRADEWATCH"

_ADDR_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# --- Custom Exceptions ---

class ConfigError(Exception):
    """Custom exception for configuration-related errors."""
    pass

# --- Pydantic Models for Configuration Sections ---

class RpcSettings(BaseModel):
    """WebSocket JSON-RPC endpoint and connection lifecycle tuning."""
    ws_url: str = "wss://xlayerws.okx.com"
    heartbeat_sec: float = Field(20.0, gt=0)
    backoff_floor_ms: int = Field(1000, gt=0)
    backoff_cap_ms: int = Field(30000, gt=0)
    connect_timeout_sec: float = Field(30.0, gt=0)
    close_timeout_sec: float = Field(5.0, ge=0)
    # None disables the timeout on metadata calls (calls then wait for the
    # reply or for the connection to drop)
    call_timeout_sec: Optional[float] = Field(30.0, gt=0)

    @field_validator("backoff_cap_ms")
    def cap_not_below_floor(cls, v, values):
        floor = values.data.get("backoff_floor_ms")
        if floor is not None and v < floor:
            raise ValueError(f"backoff_cap_ms ({v}) must be >= backoff_floor_ms ({floor})")
        return v

class ChainSettings(BaseModel):
    """Chain-specific constants: wrapped native token, native price, explorer."""
    name: str = "XLayer"
    wrapped_native: str = "0xe538905cf8410324e03a5a23c1c177a474d59b2b"
    wrapped_native_symbol: str = "WOKB"
    native_symbol: str = "OKB"
    native_decimals: int = Field(18, ge=0, le=36)
    # USD price of the native token: "190", "190.25" or "190n"
    native_price_usd: str = "190"
    explorer_tx_url: str = "https://www.oklink.com/x-layer/tx/"

    @field_validator("wrapped_native")
    def wrapped_native_is_address(cls, v):
        if not _ADDR_RE.match(v.strip()):
            raise ValueError(f"wrapped_native must be a 0x-prefixed 20-byte address, got {v!r}")
        return v.strip().lower()

    @field_validator("native_price_usd", mode="before")
    def price_as_text(cls, v):
        return str(v).strip()

    @property
    def native_price(self) -> NativePrice:
        return NativePrice.parse(self.native_price_usd)

class WalletSettings(BaseModel):
    """Where the watched-wallet list lives and how it is hot-reloaded."""
    file: str = "wallets.json"
    poll_interval_sec: float = Field(1.0, gt=0)
    debounce_ms: int = Field(300, ge=0)

class TelegramSettings(BaseModel):
    """Settings for Telegram notifications."""
    enabled: bool = False
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    dry_run: bool = False
    min_interval_sec: float = Field(0.25, ge=0)
    chunk_chars: int = Field(3500, gt=0, le=4096)
    queue_size: int = Field(1000, gt=0)
    max_retries: int = Field(3, ge=1)
    button_text: str = "View transaction"

class TransportSettings(BaseModel):
    """Container for notification transports."""
    telegram: TelegramSettings = TelegramSettings()

class LoggingSettings(BaseModel):
    """Settings for logging configuration."""
    level: str = Field("INFO", description="The logging level, e.g., DEBUG, INFO, WARNING.")

class Settings(BaseModel):
    """The root settings model."""
    rpc: RpcSettings = RpcSettings()
    chain: ChainSettings = ChainSettings()
    wallets: WalletSettings = WalletSettings()
    transport: TransportSettings = TransportSettings()
    logging: LoggingSettings = LoggingSettings()

# --- Helper Functions ---

def _load_config_from_yaml(path: Path) -> Dict[str, Any]:
    """Loads the YAML configuration file."""
    if not path.is_file():
        raise ConfigError(f"Configuration file not found at: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML file at {path}: {e}") from e

def _get_env_overrides(prefix: str = ENV_PREFIX) -> Dict[str, Any]:
    """
    Parses environment variables and converts them into a nested dict.
    e.g., TRADEWATCH_TRANSPORT__TELEGRAM__BOT_TOKEN becomes
    {'transport': {'telegram': {'bot_token': '...'}}}
    """
    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix + "_"):
            continue
        parts = key.removeprefix(prefix).strip("_").lower().split("__")

        # Tokens, chat ids, addresses and prices stay strings
        if parts[-1] in ("bot_token", "chat_id", "wrapped_native", "native_price_usd"):
            parsed_value = value
        elif (value.startswith('[') and value.endswith(']')) or \
             (value.startswith('{') and value.endswith('}')) or \
             value.lower() in ['true', 'false', 'null'] or \
             value.replace('.', '', 1).isdigit():
            try:
                parsed_value = json.loads(value.lower() if value.lower() in ['true', 'false', 'null'] else value)
            except (json.JSONDecodeError, AttributeError):
                parsed_value = value
        else:
            parsed_value = value

        d = overrides
        for part in parts[:-1]:
            d = d.setdefault(part, {})
        d[parts[-1]] = parsed_value
    return overrides

def _merge_configs(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merges the override dict into the base dict.
    Overwrites values, dictionaries, and lists.
    """
    for key, value in overrides.items():
        if isinstance(value, dict) and key in base and isinstance(base[key], dict):
            base[key] = _merge_configs(base[key], value)
        else:
            base[key] = value
    return base

# --- Public API ---

def load_settings(path: Optional[str] = "settings.yaml") -> Settings:
    """
    Loads, validates, and returns the application settings.

    Steps:
    1. Loads the base configuration from the YAML file (skipped when `path` is None).
    2. Scans environment variables for overrides (prefixed with "TRADEWATCH_").
    3. Merges the environment overrides into the base configuration.
    4. Validates the final configuration against the `Settings` model.

    Raises:
        ConfigError: If the file is not found, cannot be parsed, or if
                     validation fails.
    """
    yaml_config: Dict[str, Any] = {}
    if path is not None:
        logger.info(f"Loading settings from '{path}'...")
        yaml_config = _load_config_from_yaml(Path(path))
        if not isinstance(yaml_config, dict):
            raise ConfigError(f"YAML file '{path}' must contain a mapping at the top level.")

    final_config = _merge_configs(yaml_config, _get_env_overrides())

    try:
        settings = Settings.model_validate(final_config)
        logger.success("Settings loaded and validated successfully.")
        return settings
    except ValidationError as e:
        error_details = e.errors()
        error_msg = f"Configuration validation failed with {len(error_details)} error(s):\n"
        for error in error_details:
            loc = " -> ".join(map(str, error['loc'])) if error['loc'] else "root"
            error_msg += f"  - Location: {loc}\n    Message: {error['msg']}\n"

        logger.error(error_msg)
        raise ConfigError("Failed to validate settings.") from e

if __name__ == '__main__':
    # Prints the effective settings: `python -m tradewatch.core.config`
    # e.g. export TRADEWATCH_CHAIN__NATIVE_PRICE_USD=191.5

    from dotenv import load_dotenv
    load_dotenv()  # Load .env file if it exists

    try:
        settings = load_settings()
        print(json.dumps(settings.model_dump(), indent=2))
        print(f"\nNative price: {settings.chain.native_symbol}=${settings.chain.native_price}")
    except ConfigError as e:
        print(f"Could not load settings: {e}")
