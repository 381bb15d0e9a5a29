"""
Transaction signing

Pure function of (unsigned tx, keychain): no network access, keychain is
only read, so one keychain can sign for many concurrent transfers.
"""

from typing import List

from loguru import logger

from .errors import MissingKeyError
from .keychain import KeyChain
from .models import Credential, Signature, SignedTransaction, UnsignedTransaction


def sign(unsigned_tx: UnsignedTransaction, keychain: KeyChain) -> SignedTransaction:
    """
    Authorise every input of `unsigned_tx` with keys from `keychain`.

    Raises:
        MissingKeyError: an input's threshold cannot be met with the keychain's keys.
    """
    digest = unsigned_tx.hash()
    credentials: List[Credential] = []

    for tx_input in unsigned_tx.inputs:
        owners = tx_input.owners
        signers = [keychain.get(a) for a in owners.addresses if a in keychain]
        if len(signers) < owners.threshold:
            raise MissingKeyError(tx_input.utxo_id, owners.addresses)

        signatures = tuple(
            Signature(public_key=key.public_key.hex(), signature=key.sign_digest(digest).hex())
            for key in signers[:owners.threshold]
        )
        credentials.append(Credential(signatures))

    signed = SignedTransaction(unsigned_tx, tuple(credentials))
    logger.debug(
        f"Signed {unsigned_tx.kind.value} tx with {len(credentials)} credentials: {signed.tx_id}"
    )
    return signed
