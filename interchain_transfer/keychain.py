"""
Chain-scoped keychains.

The same private key yields a different address string on every chain
("X-..." vs "C-..."), so each chain gets its own KeyChain.
"""

import hashlib
from typing import Dict, List, Optional, Union

from ecdsa import SECP256k1, BadSignatureError, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string
from loguru import logger

from .encoding import cb58_encode, decode_private_key, encode_private_key
from .models import Address

SHORT_ID_LENGTH = 20


def derive_address(chain_alias: str, public_key: bytes) -> Address:
    """Address for a compressed public key on the given chain."""
    short_id = hashlib.blake2b(public_key, digest_size=SHORT_ID_LENGTH).digest()
    return f"{chain_alias}-{cb58_encode(short_id)}"


def verify_signature(public_key_hex: str, signature_hex: str, digest: bytes) -> bool:
    try:
        key = VerifyingKey.from_string(bytes.fromhex(public_key_hex), curve=SECP256k1)
        return key.verify_digest(bytes.fromhex(signature_hex), digest, sigdecode=sigdecode_string)
    except (BadSignatureError, ValueError):
        return False


class KeyPair:
    """secp256k1 key bound to one chain's address encoding"""

    def __init__(self, secret: bytes, chain_alias: str):
        self._signing_key = SigningKey.from_string(secret, curve=SECP256k1)
        self.chain_alias = chain_alias
        self.public_key: bytes = self._signing_key.get_verifying_key().to_string("compressed")
        self.address: Address = derive_address(chain_alias, self.public_key)

    def sign_digest(self, digest: bytes) -> bytes:
        # RFC 6979 nonces: same key + digest -> same signature
        return self._signing_key.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_string
        )

    def private_key_string(self) -> str:
        return encode_private_key(self._signing_key.to_string())

    def __repr__(self) -> str:
        return f"KeyPair({self.address})"


class KeyChain:
    """Set of keys for one chain, ordered by import"""

    def __init__(self, chain_alias: str):
        self.chain_alias = chain_alias
        self._keys: Dict[Address, KeyPair] = {}

    def import_key(self, private_key: Union[str, bytes]) -> KeyPair:
        """
        Import a private key

        Args:
            private_key: 'PrivateKey-<cb58>', hex string, or raw 32 bytes

        Returns:
            KeyPair for this chain (existing one if already imported)
        """
        secret = private_key if isinstance(private_key, bytes) else decode_private_key(private_key)
        key = KeyPair(secret, self.chain_alias)
        if key.address not in self._keys:
            self._keys[key.address] = key
            logger.debug(f"Imported key for {key.address}")
        return self._keys[key.address]

    def generate_key(self) -> KeyPair:
        return self.import_key(SigningKey.generate(curve=SECP256k1).to_string())

    def get_address_strings(self) -> List[Address]:
        return list(self._keys)

    def get(self, address: Address) -> Optional[KeyPair]:
        return self._keys.get(address)

    def __contains__(self, address: Address) -> bool:
        return address in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        return f"KeyChain({self.chain_alias}, {len(self._keys)} keys)"
