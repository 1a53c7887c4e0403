import pytest

from shinobi.crypto_core.field_encryption import (
    KEY_LENGTH,
    decrypt_json,
    derive_key_from_passkey,
    derive_key_from_password,
    encrypt_json,
    hash_pubkey,
)
from shinobi.errors import StorageError

SALT = b"\x01" * 16


class TestKeyDerivation:
    def test_password_key_deterministic(self):
        a = derive_key_from_password("hunter2", "alice", SALT, 1000)
        assert a == derive_key_from_password("hunter2", "alice", SALT, 1000)
        assert len(a) == KEY_LENGTH

    def test_password_key_bound_to_inputs(self):
        base = derive_key_from_password("hunter2", "alice", SALT, 1000)
        assert base != derive_key_from_password("hunter3", "alice", SALT, 1000)
        assert base != derive_key_from_password("hunter2", "bob", SALT, 1000)
        assert base != derive_key_from_password("hunter2", "alice", b"\x02" * 16, 1000)

    def test_account_name_normalised(self):
        assert derive_key_from_password("pw", " Alice ", SALT, 1000) == derive_key_from_password("pw", "alice", SALT, 1000)

    def test_passkey_key(self):
        key = derive_key_from_passkey(b"prf" * 11, "alice")
        assert len(key) == KEY_LENGTH
        assert key != derive_key_from_passkey(b"prf" * 11, "bob")


class TestSealing:
    def test_envelope_opens_with_same_key(self):
        key = b"a" * 32
        envelope = encrypt_json(key, {"notes": [1, 2]})
        assert set(envelope) == {"nonce", "data"}
        assert decrypt_json(key, envelope) == {"notes": [1, 2]}

    def test_fresh_nonce_per_write(self):
        key = b"a" * 32
        assert encrypt_json(key, {"x": 1})["nonce"] != encrypt_json(key, {"x": 1})["nonce"]

    def test_wrong_key_is_storage_error(self):
        envelope = encrypt_json(b"a" * 32, {"x": 1})
        with pytest.raises(StorageError):
            decrypt_json(b"b" * 32, envelope)

    def test_malformed_envelope(self):
        with pytest.raises(StorageError):
            decrypt_json(b"a" * 32, {"nonce": "!!"})

    def test_hash_pubkey_case_insensitive(self):
        assert hash_pubkey("0xABCD") == hash_pubkey("0xabcd")
