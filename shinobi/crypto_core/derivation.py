"""
Deterministic derivation of note nullifiers and secrets.

    context = keccak256(abi.encodePacked(pool, uint64 depositIndex,
                                         uint64 changeIndex, bytes32 tag)) mod p
    value   = Poseidon(accountKey, Poseidon(context, domain)) mod p

Each role (deposit, change, refund) has its own nullifier/secret tags and
its own domain constants, so outputs never collide across roles.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple, Union

from eth_abi.packed import encode_packed
from eth_utils import keccak, to_checksum_address

from shinobi.crypto_core.field import SNARK_SCALAR_FIELD, field_from_bytes, mod_field
from shinobi.crypto_core.poseidon import poseidon1, poseidon2
from shinobi.errors import DerivationError

UINT64_MAX = 2 ** 64 - 1


class NoteRole(str, Enum):
    DEPOSIT = "deposit"
    CHANGE = "change"
    REFUND = "refund"


class SecretKind(str, Enum):
    NULLIFIER = "nullifier"
    SECRET = "secret"


def _tag(label: str) -> bytes:
    return keccak(text=label)


TAGS: Dict[Tuple[NoteRole, SecretKind], bytes] = {
    (NoteRole.DEPOSIT, SecretKind.NULLIFIER): _tag("shinobi.cash:DepositNullifierV1"),
    (NoteRole.DEPOSIT, SecretKind.SECRET): _tag("shinobi.cash:DepositSecretV1"),
    (NoteRole.CHANGE, SecretKind.NULLIFIER): _tag("shinobi.cash:ChangeNullifierV1"),
    (NoteRole.CHANGE, SecretKind.SECRET): _tag("shinobi.cash:ChangeSecretV1"),
    (NoteRole.REFUND, SecretKind.NULLIFIER): _tag("shinobi.cash:RefundNullifierV1"),
    (NoteRole.REFUND, SecretKind.SECRET): _tag("shinobi.cash:RefundSecretV1"),
}

DOMAINS: Dict[Tuple[NoteRole, SecretKind], int] = {
    key: field_from_bytes(keccak(tag)) for key, tag in TAGS.items()
}


def parse_account_key(value: Union[int, str, bytes]) -> int:
    """Normalise an account key (int, hex or decimal string, raw bytes) into a non-zero field element."""
    try:
        if isinstance(value, bool):
            raise ValueError("bool")
        if isinstance(value, int):
            number = value
        elif isinstance(value, (bytes, bytearray)):
            if not value:
                raise ValueError("empty")
            number = int.from_bytes(value, "big")
        elif isinstance(value, str):
            text = value.strip()
            number = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        else:
            raise ValueError(type(value).__name__)
    except ValueError as e:
        raise DerivationError(f"malformed account key ({e})") from None
    if number < 0:
        raise DerivationError("malformed account key (negative)")
    key = mod_field(number)
    if key == 0:
        raise DerivationError("malformed account key (zero in the scalar field)")
    return key


def normalize_pool_address(pool_address: str) -> str:
    try:
        return to_checksum_address(pool_address)
    except (ValueError, TypeError) as e:
        raise DerivationError(f"malformed pool address {pool_address!r}: {e}") from None


def _check_index(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an int")
    if value < 0 or value > UINT64_MAX:
        raise ValueError(f"{name} out of uint64 range: {value}")
    return value


def derive_context(pool_address: str, deposit_index: int, change_index: int, tag: bytes) -> int:
    packed = encode_packed(
        ["address", "uint64", "uint64", "bytes32"],
        [normalize_pool_address(pool_address), deposit_index, change_index, tag],
    )
    return field_from_bytes(keccak(packed))


def _prf(key: int, context: int, domain: int) -> int:
    inner = mod_field(poseidon2(context, domain))
    return mod_field(poseidon2(key, inner))


def derive_value(
    account_key: Union[int, str, bytes],
    pool_address: str,
    deposit_index: int,
    change_index: int,
    role: NoteRole,
    kind: SecretKind,
) -> int:
    role = NoteRole(role)
    kind = SecretKind(kind)
    _check_index("deposit_index", deposit_index)
    _check_index("change_index", change_index)
    if role is NoteRole.DEPOSIT and change_index != 0:
        raise ValueError("deposit role always uses change_index 0")
    key = parse_account_key(account_key)
    context = derive_context(pool_address, deposit_index, change_index, TAGS[(role, kind)])
    return _prf(key, context, DOMAINS[(role, kind)])


def derive_nullifier(account_key, pool_address: str, deposit_index: int,
                     change_index: int = 0, role: NoteRole = NoteRole.DEPOSIT) -> int:
    return derive_value(account_key, pool_address, deposit_index, change_index, role, SecretKind.NULLIFIER)


def derive_secret(account_key, pool_address: str, deposit_index: int,
                  change_index: int = 0, role: NoteRole = NoteRole.DEPOSIT) -> int:
    return derive_value(account_key, pool_address, deposit_index, change_index, role, SecretKind.SECRET)


def role_for_change_index(change_index: int) -> NoteRole:
    return NoteRole.DEPOSIT if change_index == 0 else NoteRole.CHANGE


def derive_note_secrets(account_key, pool_address: str, deposit_index: int, change_index: int) -> Tuple[int, int]:
    """(nullifier, secret) of the note at (deposit_index, change_index)."""
    role = role_for_change_index(change_index)
    return (
        derive_nullifier(account_key, pool_address, deposit_index, change_index, role),
        derive_secret(account_key, pool_address, deposit_index, change_index, role),
    )


def precommitment(nullifier: int, secret: int) -> int:
    return poseidon2(nullifier, secret)


def nullifier_hash(nullifier: int) -> int:
    """Hash published by the pool when a note is spent."""
    return poseidon1(nullifier)


def derive_deposit_precommitment(account_key, pool_address: str, deposit_index: int) -> int:
    nullifier, secret = derive_note_secrets(account_key, pool_address, deposit_index, 0)
    return precommitment(nullifier, secret)


__all__ = [
    "SNARK_SCALAR_FIELD",
    "NoteRole",
    "SecretKind",
    "parse_account_key",
    "normalize_pool_address",
    "derive_nullifier",
    "derive_secret",
    "derive_note_secrets",
    "derive_deposit_precommitment",
    "precommitment",
    "nullifier_hash",
    "role_for_change_index",
]
