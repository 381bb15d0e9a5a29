"""
Configuration loading

Reads interchain_config.yaml into TransferSettings, configures loguru sinks
and loads the signing key from a credentials JSON file.
"""

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from .backoff import DEFAULT_PROPAGATION_POLICY, DEFAULT_STATUS_POLICY, PollPolicy, RetryPolicy
from .errors import ConfigError

DEFAULT_CONFIG_PATH = "interchain_config.yaml"
LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


@dataclass
class NetworkSettings:
    node_url: str = "https://api.avax-test.network"
    request_timeout_seconds: float = 30.0


@dataclass
class LoggingSettings:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class TransferSettings:
    """Everything read from interchain_config.yaml"""
    network: NetworkSettings = field(default_factory=NetworkSettings)
    source_chain: str = "X"
    destination_chain: str = "C"
    asset: str = "AVAX"
    fallback_tx_fee: int = 1_000_000
    status_policy: PollPolicy = DEFAULT_STATUS_POLICY
    propagation_policy: PollPolicy = DEFAULT_PROPAGATION_POLICY
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    credentials_path: str = "./credentials/keypair.json"
    history_db: Optional[str] = "transfer_history.db"
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferSettings":
        """
        Build settings from a parsed YAML document

        Raises:
            ConfigError: on wrong types or out-of-range values
        """
        try:
            network = data.get('network') or {}
            chains = data.get('chains') or {}
            fees = data.get('fees') or {}
            polling = data.get('polling') or {}
            log = data.get('logging') or {}
            defaults = cls()

            settings = cls(
                network=NetworkSettings(
                    node_url=str(network.get('node_url', defaults.network.node_url)).rstrip('/'),
                    request_timeout_seconds=float(
                        network.get('request_timeout_seconds', defaults.network.request_timeout_seconds)
                    ),
                ),
                source_chain=str(chains.get('source', defaults.source_chain)),
                destination_chain=str(chains.get('destination', defaults.destination_chain)),
                asset=str(data.get('asset', defaults.asset)),
                fallback_tx_fee=int(fees.get('fallback_tx_fee', defaults.fallback_tx_fee)),
                status_policy=PollPolicy.from_dict(polling.get('status'), DEFAULT_STATUS_POLICY),
                propagation_policy=PollPolicy.from_dict(
                    polling.get('propagation'), DEFAULT_PROPAGATION_POLICY
                ),
                retry_policy=RetryPolicy.from_dict(data.get('retry')),
                credentials_path=str(data.get('credentials_path', defaults.credentials_path)),
                history_db=data.get('history_db', defaults.history_db),
                logging=LoggingSettings(
                    level=str(log.get('level', defaults.logging.level)).upper(),
                    file=log.get('file'),
                ),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        if settings.source_chain == settings.destination_chain:
            raise ConfigError("chains.source and chains.destination must differ")
        if settings.fallback_tx_fee < 0:
            raise ConfigError("fees.fallback_tx_fee must not be negative")
        if settings.network.request_timeout_seconds <= 0:
            raise ConfigError("network.request_timeout_seconds must be positive")
        return settings


def load_settings(config_path: str = DEFAULT_CONFIG_PATH) -> TransferSettings:
    """
    Load settings from YAML

    Args:
        config_path: Path to the YAML file

    Returns:
        TransferSettings (defaults if the file does not exist)
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"⚠ Config file {path} not found, using defaults")
        return TransferSettings()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    settings = TransferSettings.from_dict(data)
    logger.info(f"✓ Loaded configuration from {path}")
    return settings


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Replace loguru's default sink; optionally add a rotating file sink."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5)


def load_credentials(path: str) -> str:
    """
    Read the private key from a credentials file

    The file is JSON with a 'privkey' field ('PrivateKey-...' or hex).
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            credentials = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Credentials file {path} not found") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Credentials file {path} is not valid JSON: {e}") from e

    privkey = credentials.get('privkey') if isinstance(credentials, dict) else None
    if not privkey:
        raise ConfigError(f"Credentials file {path} has no 'privkey'")
    return privkey
