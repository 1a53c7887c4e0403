from __future__ import annotations

from typing import Union

# BN254 scalar field
SNARK_SCALAR_FIELD = 21888242871839275222246405745257275088548364400416034343698204186575808495617

FieldLike = Union[int, str, bytes]


def mod_field(value: int) -> int:
    return value % SNARK_SCALAR_FIELD


def field_from_bytes(data: bytes) -> int:
    """Interpret big-endian bytes as an integer and reduce it into the field."""
    return mod_field(int.from_bytes(data, "big"))


def parse_field(value: FieldLike) -> int:
    """Parse an indexer/JSON value ("0x.." hex, decimal string, int or bytes) into a field element."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a field element")
    if isinstance(value, int):
        number = value
    elif isinstance(value, bytes):
        number = int.from_bytes(value, "big")
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty field element")
        number = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
    else:
        raise ValueError(f"unsupported field element type: {type(value).__name__}")
    if number < 0:
        raise ValueError("field element must be non-negative")
    return mod_field(number)


def to_decimal(value: int) -> str:
    return str(mod_field(value))
