"""
Tests for YAML settings, credentials and logging setup.
"""

import json

import pytest
from loguru import logger

from interchain_transfer.backoff import DEFAULT_PROPAGATION_POLICY
from interchain_transfer.config import TransferSettings, load_credentials, load_settings, setup_logging
from interchain_transfer.errors import ConfigError


def write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))

    assert settings == TransferSettings()
    assert settings.source_chain == "X"
    assert settings.destination_chain == "C"
    assert settings.propagation_policy == DEFAULT_PROPAGATION_POLICY


def test_full_file_is_loaded(tmp_path):
    path = write(tmp_path / "config.yaml", """
network:
  node_url: http://127.0.0.1:9650/
  request_timeout_seconds: 5
chains: {source: X, destination: P}
asset: AVAX
fees: {fallback_tx_fee: 2000000}
polling:
  status: {interval_seconds: 0.5, max_attempts: 10}
  propagation: {timeout_seconds: 30}
retry: {max_attempts: 5, delay_seconds: 0.1}
history_db: null
logging: {level: debug, file: transfer.log}
""")

    settings = load_settings(path)

    assert settings.network.node_url == "http://127.0.0.1:9650"
    assert settings.network.request_timeout_seconds == 5.0
    assert settings.destination_chain == "P"
    assert settings.fallback_tx_fee == 2_000_000
    assert settings.status_policy.interval_seconds == 0.5
    assert settings.status_policy.max_attempts == 10
    assert settings.status_policy.timeout_seconds == 120.0
    assert settings.propagation_policy.timeout_seconds == 30.0
    assert settings.propagation_policy.interval_seconds == DEFAULT_PROPAGATION_POLICY.interval_seconds
    assert settings.retry_policy.max_attempts == 5
    assert settings.history_db is None
    assert settings.logging.level == "DEBUG"
    assert settings.logging.file == "transfer.log"


@pytest.mark.parametrize("text", [
    "chains: {source: X, destination: X}\n",
    "fees: {fallback_tx_fee: -1}\n",
    "polling: {status: {max_attempts: 0}}\n",
    "retry: {max_attempts: many}\n",
    "network: not-a-mapping\n",
    "- just\n- a list\n",
    "network: {node_url: [unclosed\n",
])
def test_invalid_config_raises(tmp_path, text):
    with pytest.raises(ConfigError):
        load_settings(write(tmp_path / "bad.yaml", text))


def test_load_credentials(tmp_path):
    path = tmp_path / "keypair.json"
    path.write_text(json.dumps({"privkey": "PrivateKey-abc", "address": "X-..."}))
    assert load_credentials(str(path)) == "PrivateKey-abc"


@pytest.mark.parametrize("content", ["{}", "not json", "[1, 2]"])
def test_bad_credentials_raise(tmp_path, content):
    path = tmp_path / "keypair.json"
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_credentials(str(path))


def test_missing_credentials_raise(tmp_path):
    with pytest.raises(ConfigError):
        load_credentials(str(tmp_path / "nope.json"))


def test_setup_logging_writes_file_sink(tmp_path):
    log_file = tmp_path / "transfer.log"
    setup_logging("INFO", str(log_file))
    logger.debug("checkpoint written")
    logger.remove()

    assert "checkpoint written" in log_file.read_text()
    setup_logging("INFO")
