"""
Pytest configuration

Fixtures build an in-process LocalNetwork, chain-scoped keychains for one
key, and transfer engines with zero-delay polling so the suite runs fast.
"""

import pytest

from interchain_transfer.backoff import PollPolicy, RetryPolicy
from interchain_transfer.devnet import LocalNetwork
from interchain_transfer.keychain import KeyChain
from interchain_transfer.transaction_history import TransferHistoryDB
from interchain_transfer.transfer_engine import InterchainTransferEngine, TransferContext

PRIVATE_KEY = "0x" + "11" * 32
OTHER_PRIVATE_KEY = "0x" + "22" * 32

FAST_POLICY = PollPolicy(interval_seconds=0.0, backoff=1.0, max_interval_seconds=0.0,
                         max_attempts=20, timeout_seconds=5.0)
FAST_RETRY = RetryPolicy(max_attempts=3, delay_seconds=0.0)


def make_keychains(private_key=PRIVATE_KEY, aliases=("X", "P", "C")):
    keychains = {}
    for alias in aliases:
        keychains[alias] = KeyChain(alias)
        keychains[alias].import_key(private_key)
    return keychains


@pytest.fixture
def network():
    """Local network with one Processing poll and one propagation poll."""
    return LocalNetwork()


@pytest.fixture
def keychains():
    return make_keychains()


@pytest.fixture
def x_address(keychains):
    return keychains["X"].get_address_strings()[0]


@pytest.fixture
def c_address(keychains):
    return keychains["C"].get_address_strings()[0]


@pytest.fixture
def history():
    db = TransferHistoryDB(":memory:")
    yield db
    db.close()


@pytest.fixture
def make_engine(network, keychains):
    """Factory for engines on the shared network; keyword args override context fields."""
    def factory(**overrides):
        options = dict(
            client=network,
            keychains=keychains,
            status_policy=FAST_POLICY,
            propagation_policy=FAST_POLICY,
            retry_policy=FAST_RETRY,
        )
        options.update(overrides)
        return InterchainTransferEngine(TransferContext(**options))
    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def funded_engine(network, x_address, make_engine, history):
    """Engine with checkpointing and 100,000,000 nAVAX on the X-chain."""
    network.fund("X", x_address, 100_000_000)
    return make_engine(history=history)
