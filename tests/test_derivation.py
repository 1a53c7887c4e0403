import pytest

from conftest import ACCOUNT_KEY, OTHER_POOL, POOL
from shinobi.crypto_core.derivation import (
    DOMAINS,
    NoteRole,
    derive_deposit_precommitment,
    derive_note_secrets,
    derive_nullifier,
    derive_secret,
    normalize_pool_address,
    parse_account_key,
    precommitment,
    role_for_change_index,
)
from shinobi.crypto_core.field import SNARK_SCALAR_FIELD
from shinobi.errors import DerivationError


class TestDerivation:
    """Deterministic nullifier/secret derivation."""

    def test_deterministic(self):
        assert derive_note_secrets(ACCOUNT_KEY, POOL, 3, 0) == derive_note_secrets(ACCOUNT_KEY, POOL, 3, 0)

    def test_key_formats_agree(self):
        as_hex = hex(ACCOUNT_KEY)
        as_bytes = ACCOUNT_KEY.to_bytes(32, "big")
        assert derive_nullifier(as_hex, POOL, 0) == derive_nullifier(ACCOUNT_KEY, POOL, 0)
        assert derive_nullifier(as_bytes, POOL, 0) == derive_nullifier(ACCOUNT_KEY, POOL, 0)
        assert derive_nullifier(str(ACCOUNT_KEY), POOL, 0) == derive_nullifier(ACCOUNT_KEY, POOL, 0)

    def test_pool_address_case_insensitive(self):
        assert derive_nullifier(ACCOUNT_KEY, POOL.lower(), 1) == derive_nullifier(ACCOUNT_KEY, POOL, 1)

    def test_outputs_distinct_across_inputs(self):
        values = {
            derive_nullifier(ACCOUNT_KEY, POOL, 0),
            derive_secret(ACCOUNT_KEY, POOL, 0),
            derive_nullifier(ACCOUNT_KEY, POOL, 1),
            derive_nullifier(ACCOUNT_KEY, POOL, 0, 1, NoteRole.CHANGE),
            derive_nullifier(ACCOUNT_KEY, POOL, 0, 1, NoteRole.REFUND),
            derive_nullifier(ACCOUNT_KEY, OTHER_POOL, 0),
            derive_nullifier(ACCOUNT_KEY + 1, POOL, 0),
        }
        assert len(values) == 7

    def test_outputs_distinct_across_sample(self):
        slots = [(d, 0, NoteRole.DEPOSIT) for d in range(50)]
        slots += [(d, c, role) for d in range(50) for c in range(1, 5) for role in (NoteRole.CHANGE, NoteRole.REFUND)]
        values = [derive_nullifier(ACCOUNT_KEY, POOL, d, c, role) for d, c, role in slots]
        values += [derive_secret(ACCOUNT_KEY, POOL, d, c, role) for d, c, role in slots]
        assert len(set(values)) == len(values)

    def test_outputs_in_field(self):
        nullifier, secret = derive_note_secrets(ACCOUNT_KEY, POOL, 0, 2)
        assert 0 <= nullifier < SNARK_SCALAR_FIELD
        assert 0 <= secret < SNARK_SCALAR_FIELD

    def test_domains_unique(self):
        assert len(set(DOMAINS.values())) == len(DOMAINS)

    def test_role_for_change_index(self):
        assert role_for_change_index(0) is NoteRole.DEPOSIT
        assert role_for_change_index(4) is NoteRole.CHANGE

    def test_deposit_precommitment(self):
        nullifier, secret = derive_note_secrets(ACCOUNT_KEY, POOL, 2, 0)
        assert derive_deposit_precommitment(ACCOUNT_KEY, POOL, 2) == precommitment(nullifier, secret)

    def test_deposit_role_rejects_change_index(self):
        with pytest.raises(ValueError):
            derive_nullifier(ACCOUNT_KEY, POOL, 0, 1, NoteRole.DEPOSIT)

    def test_index_range_checked(self):
        with pytest.raises(ValueError):
            derive_nullifier(ACCOUNT_KEY, POOL, -1)
        with pytest.raises(ValueError):
            derive_nullifier(ACCOUNT_KEY, POOL, 2 ** 64)


class TestMalformedInput:
    @pytest.mark.parametrize("bad", [0, SNARK_SCALAR_FIELD, -3, "xyz", b"", True, 1.5])
    def test_bad_account_key(self, bad):
        with pytest.raises(DerivationError):
            parse_account_key(bad)

    def test_bad_pool_address(self):
        with pytest.raises(DerivationError):
            normalize_pool_address("0x1234")
        with pytest.raises(DerivationError):
            derive_nullifier(ACCOUNT_KEY, "not-an-address", 0)
