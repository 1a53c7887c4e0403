"""
Account key material.

A 12-word BIP-39 phrase derives an Ethereum key on m/44'/60'/0'/0/0; the
private key reduced into the scalar field is the accountKey used for all
note derivations. The compressed public key only namespaces storage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Union

from eth_account import Account
from eth_keys import keys
from eth_utils import ValidationError

from shinobi.crypto_core.derivation import parse_account_key
from shinobi.errors import DerivationError

# Required to use mnemonic derivation in eth-account
Account.enable_unaudited_hdwallet_features()

DEFAULT_DERIVATION_PATH = "m/44'/60'/0'/0/0"


@dataclass(frozen=True)
class AccountKeys:
    account_key: int
    public_key: str  # compressed secp256k1, 0x-prefixed
    address: str     # checksum address
    mnemonic: List[str] = field(default_factory=list, repr=False)

    def __repr__(self) -> str:
        return f"AccountKeys(address={self.address!r}, public_key={self.public_key!r})"


def _from_private_key_bytes(private_key: bytes, mnemonic: List[str]) -> AccountKeys:
    pk = keys.PrivateKey(private_key)
    return AccountKeys(
        account_key=parse_account_key(private_key),
        public_key="0x" + pk.public_key.to_compressed_bytes().hex(),
        address=pk.public_key.to_checksum_address(),
        mnemonic=mnemonic,
    )


def keys_from_mnemonic(mnemonic: Union[str, List[str]], path: str = DEFAULT_DERIVATION_PATH) -> AccountKeys:
    words = mnemonic.split() if isinstance(mnemonic, str) else [w.strip() for w in mnemonic]
    try:
        acct = Account.from_mnemonic(" ".join(words), account_path=path)
    except (ValidationError, ValueError) as e:
        raise DerivationError(f"invalid mnemonic phrase: {e}") from None
    return _from_private_key_bytes(bytes(acct.key), words)


def keys_from_private_key(private_key: Union[str, bytes]) -> AccountKeys:
    if isinstance(private_key, str):
        text = private_key[2:] if private_key.lower().startswith("0x") else private_key
        try:
            private_key = bytes.fromhex(text)
        except ValueError:
            raise DerivationError("private key is not valid hex") from None
    if len(private_key) != 32:
        raise DerivationError("private key must be 32 bytes")
    try:
        return _from_private_key_bytes(private_key, [])
    except (ValidationError, ValueError) as e:
        raise DerivationError(f"invalid private key: {e}") from None


def generate_account(num_words: int = 12) -> AccountKeys:
    """Create a fresh random account and return it with its backup phrase."""
    acct, phrase = Account.create_with_mnemonic(num_words=num_words)
    return _from_private_key_bytes(bytes(acct.key), phrase.split())
