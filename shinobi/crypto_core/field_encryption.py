from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

from shinobi.errors import StorageError

KEY_LENGTH = SecretBox.KEY_SIZE  # 32
USER_SALT_LENGTH = 16
SALT_PREFIX = "shinobi-salt-"
HKDF_INFO = b"shinobi-kdf-v1"


def hash_pubkey(value: str) -> str:
    """Privacy-preserving index key: sha256 of the lower-cased string."""
    return hashlib.sha256(value.lower().encode()).hexdigest()


def account_salt(account_name: str) -> bytes:
    return hashlib.sha256((SALT_PREFIX + account_name.lower().strip()).encode()).digest()


def new_user_salt() -> bytes:
    return nacl_random(USER_SALT_LENGTH)


def derive_key_from_password(password: str, account_name: str, user_salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=account_salt(account_name) + user_salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode())


def derive_key_from_passkey(prf_output: bytes, account_name: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=account_salt(account_name),
        info=HKDF_INFO,
    )
    return hkdf.derive(prf_output)


def encrypt_json(key32: bytes, value: Any) -> Dict[str, str]:
    sb = SecretBox(key32)
    nonce = nacl_random(SecretBox.NONCE_SIZE)
    ct = sb.encrypt(json.dumps(value, separators=(",", ":")).encode(), nonce)
    return {
        "nonce": base64.b64encode(nonce).decode(),
        "data": base64.b64encode(ct.ciphertext).decode(),
    }


def decrypt_json(key32: bytes, envelope: Dict[str, str]) -> Any:
    try:
        nonce = base64.b64decode(envelope["nonce"])
        ciphertext = base64.b64decode(envelope["data"])
        plaintext = SecretBox(key32).decrypt(ciphertext, nonce)
    except (CryptoError, KeyError, TypeError, ValueError) as e:
        raise StorageError(f"failed to decrypt record: {e.__class__.__name__}") from None
    return json.loads(plaintext)
