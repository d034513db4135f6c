"""Keys, addresses, digests and signatures over canonical bytes."""

import hashlib

import pytest

from pangu.canonical import canonicalize
from pangu.errors import SerializationContractViolation
from pangu.records import (
    CapsuleAddressRequest,
    EcdsaSignature,
    PublicKeyNew,
    Transaction,
    TXOutput,
    UserNewTX,
)
from pangu.signing import (
    CURVE_ORDER,
    ENVELOPE_EXCLUDE,
    compute_txid,
    derive_address,
    generate_private_key,
    output_hash,
    private_key_from_secret,
    private_key_hex,
    public_key_from_secret,
    record_digest,
    sign,
    sign_digest,
    transaction_hash,
    verify,
    verify_digest,
)

# Generator point of P-256, the public key of private scalar 1.
GX = 0x6B17D1F2E12C4247F8BCE6E563A440F277037D812DEB33A0F4A13945D898C296
GY = 0x4FE342E2FE1A7F9B8EE7EB4A7C0F9E162BCE33576B315ECECBB6406837BF51F5


# =============================================================================
# KEYS AND ADDRESSES
# =============================================================================

class TestKeys:

    def test_scalar_one_gives_generator(self):
        pk = public_key_from_secret(1)
        assert (pk.curve_name, pk.x, pk.y) == ("P256", GX, GY)

    def test_secret_forms_agree(self):
        as_bytes = public_key_from_secret((1).to_bytes(32, "big"))
        as_hex = public_key_from_secret("0x" + "00" * 31 + "01")
        assert as_bytes == as_hex == public_key_from_secret(1)

    def test_generated_key_round_trips_through_hex(self):
        secret = generate_private_key()
        assert len(secret) == 32
        assert public_key_from_secret(private_key_hex(secret)) == public_key_from_secret(secret)

    @pytest.mark.parametrize("bad", [0, CURVE_ORDER, b"\x01" * 31, ""])
    def test_invalid_secrets_rejected(self, bad):
        with pytest.raises(ValueError):
            private_key_from_secret(bad)

    def test_address_is_truncated_hash_of_uncompressed_point(self):
        expected = hashlib.sha256(
            b"\x04" + GX.to_bytes(32, "big") + GY.to_bytes(32, "big")
        ).hexdigest()[:40]
        assert derive_address(PublicKeyNew("P256", GX, GY)) == expected
        assert len(expected) == 40

    def test_address_from_crypto_key_matches_record(self):
        key = private_key_from_secret(1).public_key()
        assert derive_address(key) == derive_address(PublicKeyNew("P256", GX, GY))


# =============================================================================
# SIGNATURES
# =============================================================================

class TestSignatures:

    def test_sign_and_verify_capsule_request(self, keys):
        req = CapsuleAddressRequest(user_id="", address="ab" * 20, timestamp=99)
        sig = sign(req, ["Sig"], keys["a"]["secret"])
        assert 0 < sig.r < CURVE_ORDER and 0 < sig.s < CURVE_ORDER
        assert verify(req, sig, ["Sig"], keys["a"]["public_key"])

    def test_signature_field_value_does_not_affect_digest(self, keys):
        req = CapsuleAddressRequest(address="ab" * 20, timestamp=99)
        sig = sign(req, ["Sig"], keys["a"]["secret"])
        req.sig = sig
        assert verify(req, sig, ["Sig"], keys["a"]["public_key"])

    def test_tampered_record_fails(self, keys):
        req = CapsuleAddressRequest(address="ab" * 20, timestamp=99)
        sig = sign(req, ["Sig"], keys["a"]["secret"])
        req.timestamp = 100
        assert not verify(req, sig, ["Sig"], keys["a"]["public_key"])

    def test_wrong_key_fails(self, keys):
        req = CapsuleAddressRequest(address="ab" * 20, timestamp=99)
        sig = sign(req, ["Sig"], keys["a"]["secret"])
        assert not verify(req, sig, ["Sig"], keys["b"]["public_key"])

    def test_signing_without_excluding_signature_field_is_violation(self, keys):
        req = CapsuleAddressRequest(address="ab" * 20)
        with pytest.raises(SerializationContractViolation):
            sign(req, [], keys["a"]["secret"])
        with pytest.raises(SerializationContractViolation):
            verify(req, EcdsaSignature(1, 1), [], keys["a"]["public_key"])

    def test_envelope_exclusions(self, keys):
        env = UserNewTX(tx=Transaction(guarantor_group="g"), user_id="u", height=12)
        sig = sign(env, ENVELOPE_EXCLUDE, keys["account"]["secret"])
        env.height = 9999
        assert verify(env, sig, ENVELOPE_EXCLUDE, keys["account"]["public_key"])

    @pytest.mark.parametrize("sig", [
        EcdsaSignature(None, None),
        EcdsaSignature(0, 1),
        EcdsaSignature(1, CURVE_ORDER),
    ])
    def test_degenerate_signatures_rejected(self, keys, sig):
        assert not verify_digest(b"\x00" * 32, sig, keys["a"]["public_key"])

    def test_off_curve_key_does_not_verify(self, keys):
        d = record_digest(CapsuleAddressRequest(), ["Sig"])
        sig = sign_digest(d, keys["a"]["secret"])
        assert not verify_digest(d, sig, PublicKeyNew("P256", 1, 1))

    def test_sign_digest_requires_32_bytes(self, keys):
        with pytest.raises(ValueError):
            sign_digest(b"short", keys["a"]["secret"])


# =============================================================================
# TRANSACTION HASHES
# =============================================================================

class TestTransactionHash:

    def _tx(self):
        return Transaction(
            guarantor_group="g",
            value=5.0,
            value_division={0: 5.0},
            tx_outputs=[TXOutput(to_address="ab" * 20, to_value=5.0, to_public_key=PublicKeyNew.zero_point())],
        )

    def test_txid_is_first_eight_bytes_hex(self):
        tx = self._tx()
        assert compute_txid(tx) == transaction_hash(tx)[:8].hex()
        assert len(compute_txid(tx)) == 16

    def test_excluded_fields_do_not_change_hash(self):
        tx = self._tx()
        before = transaction_hash(tx)
        tx.txid = "ffffffffffffffff"
        tx.size = 512
        tx.new_value = 3.0
        tx.tx_type = 1
        tx.user_signature = EcdsaSignature(7, 8)
        assert transaction_hash(tx) == before

    def test_guarantor_made_entries_do_not_change_hash(self):
        tx = self._tx()
        before = transaction_hash(tx)
        tx.tx_outputs.append(TXOutput(to_address="guar", to_value=1.0, is_guar_make=True))
        assert transaction_hash(tx) == before

    def test_output_change_changes_hash(self):
        tx = self._tx()
        before = transaction_hash(tx)
        tx.tx_outputs[0].to_value = 5.5
        assert transaction_hash(tx) != before

    def test_output_hash_is_digest_of_canonical_output(self):
        out = TXOutput(to_address="ab" * 20, to_value=2.0)
        assert output_hash(out) == hashlib.sha256(canonicalize(out)).digest()
