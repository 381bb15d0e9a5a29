"""
Tests for CB58 encoding, keychains and signing.
"""

import pytest

from interchain_transfer.builder import TransactionBuilder
from interchain_transfer.encoding import (
    cb58_decode,
    cb58_encode,
    decode_private_key,
    encode_private_key,
    format_amount,
)
from interchain_transfer.errors import MissingKeyError
from interchain_transfer.keychain import KeyChain, derive_address, verify_signature
from interchain_transfer.models import OutputOwners, UTXO
from interchain_transfer.signer import sign

from conftest import OTHER_PRIVATE_KEY, PRIVATE_KEY, make_keychains


def test_cb58_checksum_detects_corruption():
    """Test that a flipped character fails the checksum."""
    encoded = cb58_encode(b"\x01\x02\x03\x04")
    assert cb58_decode(encoded) == b"\x01\x02\x03\x04"

    corrupted = ("2" if encoded[0] != "2" else "3") + encoded[1:]
    with pytest.raises(ValueError):
        cb58_decode(corrupted)


def test_private_key_formats_are_equivalent():
    """Test PrivateKey-, hex and 0x-hex forms decode to the same secret."""
    secret = decode_private_key(PRIVATE_KEY)
    assert secret == bytes.fromhex("11" * 32)
    assert decode_private_key(encode_private_key(secret)) == secret
    assert decode_private_key("11" * 32) == secret


def test_format_amount():
    assert format_amount(50_000_000) == "0.05"
    assert format_amount(1_000_000_000) == "1"
    assert format_amount(0) == "0"


def test_addresses_are_chain_scoped():
    """Test one key yields X- and C- addresses sharing the same short ID."""
    keychains = make_keychains()
    x_address = keychains["X"].get_address_strings()[0]
    c_address = keychains["C"].get_address_strings()[0]

    assert x_address.startswith("X-")
    assert c_address.startswith("C-")
    assert x_address[2:] == c_address[2:]


def test_import_key_is_idempotent():
    keychain = KeyChain("X")
    first = keychain.import_key(PRIVATE_KEY)
    second = keychain.import_key(encode_private_key(decode_private_key(PRIVATE_KEY)))

    assert first is second
    assert len(keychain) == 1
    assert first.address in keychain


def test_signatures_are_deterministic_and_verifiable():
    keychain = KeyChain("X")
    key = keychain.import_key(PRIVATE_KEY)
    digest = bytes(32)

    signature = key.sign_digest(digest)
    assert signature == key.sign_digest(digest)
    assert verify_signature(key.public_key.hex(), signature.hex(), digest)
    assert not verify_signature(key.public_key.hex(), signature.hex(), b"\x01" * 32)
    assert derive_address("X", key.public_key) == key.address


def _unsigned_for(owner):
    utxo = UTXO("genesis", 0, "AVAX", 10_000_000, OutputOwners((owner,)))
    builder = TransactionBuilder("chain-x", "AVAX", 1_000_000)
    return builder.build_transfer([utxo], 5_000_000, "AVAX", [owner], [owner], [owner])


def test_sign_produces_one_credential_per_input():
    keychain = make_keychains(aliases=("X",))["X"]
    owner = keychain.get_address_strings()[0]

    signed = sign(_unsigned_for(owner), keychain)

    assert len(signed.credentials) == len(signed.unsigned.inputs) == 1
    credential = signed.credentials[0].signatures[0]
    assert verify_signature(credential.public_key, credential.signature, signed.unsigned.hash())


def test_sign_without_owner_key_raises_missing_key():
    """Test signing inputs owned by an address the keychain lacks."""
    owner = make_keychains(OTHER_PRIVATE_KEY, aliases=("X",))["X"].get_address_strings()[0]
    keychain = make_keychains(aliases=("X",))["X"]

    with pytest.raises(MissingKeyError) as exc_info:
        sign(_unsigned_for(owner), keychain)

    assert owner in exc_info.value.addresses


def test_signed_tx_id_is_stable():
    """Test signing the same unsigned tx twice yields the same TxID."""
    keychain = make_keychains(aliases=("X",))["X"]
    owner = keychain.get_address_strings()[0]
    unsigned = _unsigned_for(owner)

    assert sign(unsigned, keychain).tx_id == sign(unsigned, keychain).tx_id
