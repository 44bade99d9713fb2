"""
Tip Settlement Configuration

Loads settings from tip_config.yaml with environment overrides (.env supported).
Missing or unreadable config files fall back to defaults.
"""

import os
import sys
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger


DEFAULT_CONFIG_PATH = "tip_config.yaml"

# Environment variable -> config field
ENV_OVERRIDES = {
    'MONAD_RPC_URL': 'rpc_url',
    'MONAD_CHAIN_ID': 'chain_id',
    'FEES_WALLET_ADDRESS': 'fee_address',
    'TIP_DB_PATH': 'db_path',
    'TIP_FEE_RATE': 'fee_rate',
}

DECIMAL_FIELDS = ('fee_rate', 'network_fee_buffer')
INT_FIELDS = ('chain_id', 'max_transfer_attempts', 'status_poll_attempts')
FLOAT_FIELDS = (
    'min_call_interval_seconds',
    'retry_delay_seconds',
    'confirmation_timeout_seconds',
    'status_poll_interval_seconds',
    'giveaway_duration_seconds',
)


@dataclass
class TipConfig:
    """Tip settlement settings"""
    # Chain
    rpc_url: str = "https://testnet-rpc.monad.xyz/"
    chain_id: int = 10143
    explorer_tx_url: str = "https://testnet.monadexplorer.com/tx/"
    fee_address: str = "0x0000000000000000000000000000000000000000"

    # Fees
    fee_rate: Decimal = Decimal("0.10")
    network_fee_buffer: Decimal = Decimal("0.000005")

    # Transfer execution
    min_call_interval_seconds: float = 0.1
    retry_delay_seconds: float = 2.0
    max_transfer_attempts: int = 3
    confirmation_timeout_seconds: float = 30.0
    status_poll_attempts: int = 3
    status_poll_interval_seconds: float = 2.0

    # Giveaways
    giveaway_duration_seconds: float = 60.0
    giveaway_triggers: List[str] = field(default_factory=lambda: ["gmonad", "gm", "gm monad"])
    allow_overlapping_giveaways: bool = False

    # Storage
    db_path: str = "tip_bot.db"

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ValueError on settings that would make settlement unsafe"""
        if not (Decimal("0") <= self.fee_rate < Decimal("1")):
            raise ValueError(f"fee_rate must be in [0, 1), got {self.fee_rate}")
        if self.network_fee_buffer < 0:
            raise ValueError(f"network_fee_buffer must be >= 0, got {self.network_fee_buffer}")
        if self.max_transfer_attempts < 1:
            raise ValueError("max_transfer_attempts must be at least 1")
        if self.min_call_interval_seconds < 0 or self.retry_delay_seconds < 0:
            raise ValueError("intervals must be >= 0")
        if self.giveaway_duration_seconds <= 0:
            raise ValueError("giveaway_duration_seconds must be > 0")
        self.giveaway_triggers = [t.strip().lower() for t in self.giveaway_triggers if t.strip()]
        if not self.giveaway_triggers:
            raise ValueError("At least one giveaway trigger is required")


def _coerce(name: str, value):
    """Convert a raw YAML/env value to the field's type"""
    if name in DECIMAL_FIELDS:
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Invalid decimal for {name}: {value!r}")
    if name in INT_FIELDS:
        return int(value)
    if name in FLOAT_FIELDS:
        return float(value)
    if name == 'allow_overlapping_giveaways' and isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    if name == 'giveaway_triggers' and isinstance(value, str):
        return [t for t in value.split(',')]
    return value


def _read_yaml(config_path: str) -> Dict:
    config_file = Path(config_path)
    if not config_file.exists():
        logger.warning(f"Config file {config_file} not found, using defaults")
        return {}

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except Exception as e:
        logger.warning(f"Failed to load config from {config_file}: {e}, using defaults")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Config file {config_file} is not a mapping, using defaults")
        return {}

    # Sections are flattened: {chain: {rpc_url: ...}, fees: {...}} -> {rpc_url: ...}
    flat = {}
    for key, value in data.items():
        if isinstance(value, dict):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def load_config(config_path: str = DEFAULT_CONFIG_PATH, use_env: bool = True) -> TipConfig:
    """
    Load configuration

    Priority:
    1. Environment variables (and .env)
    2. YAML config file
    3. Defaults

    Args:
        config_path: Path to YAML config
        use_env: Apply environment overrides

    Returns:
        TipConfig
    """
    raw = _read_yaml(config_path)

    if use_env:
        load_dotenv()
        for env_key, name in ENV_OVERRIDES.items():
            value = os.getenv(env_key)
            if value:
                raw[name] = value

    known = {f.name for f in fields(TipConfig)}
    unknown = set(raw) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")

    values = {name: _coerce(name, value) for name, value in raw.items() if name in known}
    config = TipConfig(**values)

    logger.info("Tip settlement config loaded")
    logger.info(f"  RPC: {config.rpc_url} (chain {config.chain_id})")
    logger.info(f"  Fee rate: {config.fee_rate}, network buffer: {config.network_fee_buffer}")
    logger.info(f"  Giveaway: {config.giveaway_duration_seconds}s, triggers {config.giveaway_triggers}")

    return config


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure loguru sinks

    Args:
        level: Minimum level for stderr
        log_file: Optional rotating log file
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
               "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    )
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5)
