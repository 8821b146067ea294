"""Tests for key validation and the parallel-array read path."""

import pytest
from ecdsa import NIST256p, NIST384p, SECP256k1, SigningKey

from didregistry_core.errors import InvalidArgument
from didregistry_core.keys import (
    KeyManager,
    key_from_verifying_key,
    lookup_curve,
    point_on_curve,
)
from didregistry_core.records import Key, KeyPurpose

ID = "ee" * 32


@pytest.fixture
def manager(store):
    return KeyManager(store)


class TestMakeKey:
    def test_valid_p256_point(self, manager, p256_key):
        x, y = p256_key
        key = manager.make_key(x, y, "signing", "P-256")
        assert key == Key(x=x, y=y, purpose=KeyPurpose.SIGNING, curve="P-256")

    def test_valid_secp256k1_point(self, manager, k1_key):
        x, y = k1_key
        key = manager.make_key(x, y, KeyPurpose.AUTHENTICATION, "secp256k1")
        assert key.curve == "secp256k1"

    def test_hex_coordinates_accepted(self, manager, p256_key):
        x, y = p256_key
        key = manager.make_key("0x" + x.hex(), y.hex(), 2, "P-256")
        assert key.x == x
        assert key.y == y
        assert key.purpose is KeyPurpose.ENCRYPTION

    def test_curve_name_stripped(self, manager, p256_key):
        key = manager.make_key(*p256_key, "signing", "  P-256 ")
        assert key.curve == "P-256"

    @pytest.mark.parametrize("width", [0, 31, 33, 64])
    def test_wrong_width(self, manager, width):
        with pytest.raises(InvalidArgument):
            manager.make_key(b"\x01" * width, b"\x02" * 32, "signing", "ed-custom")

    def test_bad_hex(self, manager):
        with pytest.raises(InvalidArgument):
            manager.make_key("zz" * 32, "00" * 32, "signing", "ed-custom")

    def test_non_bytes_coordinate(self, manager):
        with pytest.raises(InvalidArgument):
            manager.make_key(12345, b"\x00" * 32, "signing", "ed-custom")

    def test_unknown_purpose(self, manager, p256_key):
        with pytest.raises(InvalidArgument):
            manager.make_key(*p256_key, "recovery", "P-256")

    @pytest.mark.parametrize("curve", ["", "   ", None])
    def test_missing_curve(self, manager, p256_key, curve):
        with pytest.raises(InvalidArgument):
            manager.make_key(*p256_key, "signing", curve)

    def test_off_curve_point_rejected(self, manager, p256_key):
        x, y = p256_key
        bad_y = bytes([y[0] ^ 0x01]) + y[1:]
        with pytest.raises(InvalidArgument):
            manager.make_key(x, bad_y, "signing", "P-256")

    def test_point_from_other_curve_rejected(self, manager, k1_key):
        with pytest.raises(InvalidArgument):
            manager.make_key(*k1_key, "signing", "P-256")

    def test_unknown_curve_not_checked(self, manager):
        key = manager.make_key(b"\x01" * 32, b"\x02" * 32, "signing", "X25519")
        assert key.curve == "X25519"

    def test_validation_disabled(self, store):
        loose = KeyManager(store, validate_points=False)
        key = loose.make_key(b"\x01" * 32, b"\x02" * 32, "signing", "P-256")
        assert key.curve == "P-256"


class TestCurveHelpers:
    @pytest.mark.parametrize("name", ["P-256", "p-256", "secp256r1", "prime256v1", "NIST256p"])
    def test_p256_aliases(self, name):
        assert lookup_curve(name) is NIST256p

    def test_unknown(self):
        assert lookup_curve("ed25519") is None

    def test_point_on_curve(self, curve_point):
        x, y = curve_point(3)
        assert point_on_curve(NIST256p, x, y) is True
        assert point_on_curve(SECP256k1, x, y) is False

    def test_coordinate_above_field_prime(self):
        assert point_on_curve(SECP256k1, b"\xff" * 32, b"\xff" * 32) is False


class TestFromVerifyingKey:
    def test_p256(self):
        vk = SigningKey.from_secret_exponent(5, curve=NIST256p).get_verifying_key()
        key = key_from_verifying_key(vk, "authentication")
        assert key.curve == "P-256"
        assert key.x + key.y == vk.to_string()
        assert key.purpose is KeyPurpose.AUTHENTICATION

    def test_secp256k1(self):
        vk = SigningKey.from_secret_exponent(5, curve=SECP256k1).get_verifying_key()
        assert key_from_verifying_key(vk, 1).curve == "secp256k1"

    def test_wider_curve_unsupported(self):
        vk = SigningKey.from_secret_exponent(5, curve=NIST384p).get_verifying_key()
        with pytest.raises(InvalidArgument):
            key_from_verifying_key(vk, "signing")


class TestListKeys:
    def test_absent_record(self, manager):
        assert manager.list_keys(ID) == ((), (), (), ())

    def test_keyless_record(self, manager, store):
        store.create(ID, "rSubject", "rAlice", 1.0)
        assert manager.list_keys(ID) == ((), (), (), ())

    def test_aligned_arrays(self, manager, store):
        store.create(ID, "rSubject", "rAlice", 1.0)
        k1 = Key(x=b"\x01" * 32, y=b"\x02" * 32, purpose=KeyPurpose.SIGNING, curve="P-256")
        k2 = Key(x=b"\x03" * 32, y=b"\x04" * 32, purpose=KeyPurpose.ENCRYPTION, curve="X25519")
        store.append_key(ID, k1, 2.0)
        store.append_key(ID, k2, 3.0)
        xs, ys, purposes, curves = manager.list_keys(ID)
        assert xs == (k1.x, k2.x)
        assert ys == (k1.y, k2.y)
        assert purposes == (1, 2)
        assert curves == ("P-256", "X25519")
