"""Unit tests for master key wrapping."""

import base64

import pytest

from agile_vault import crypto, key_wrap
from agile_vault.errors import FormatError, IncorrectPasswordError
from agile_vault.key_wrap import EncryptionKeyEntry

ITERATIONS = 100


def make_entry(password, raw_key, level="SL5", iterations=ITERATIONS):
    wrapped = key_wrap.wrap_key(password, raw_key, iterations)
    return EncryptionKeyEntry(
        identifier=crypto.new_uuid(),
        data=wrapped.data,
        validation=wrapped.validation,
        iterations=iterations,
        level=level,
    )


@pytest.fixture
def raw_key():
    return crypto.random_bytes(1024)


class TestWrapKey:
    """Tests for wrapping and unwrapping."""

    def test_wrap_unwrap(self, raw_key):
        """Test the right password recovers the key."""
        entry = make_entry("correct horse", raw_key)

        assert key_wrap.unwrap_key("correct horse", entry) == raw_key

    def test_wrapped_data_format(self, raw_key):
        """Test the data field is a base64 Salted__ blob with the salt used."""
        wrapped = key_wrap.wrap_key("pw", raw_key, ITERATIONS)
        blob = base64.b64decode(wrapped.data)

        assert blob.startswith(b"Salted__")
        assert blob[8:16] == wrapped.salt

    def test_validation_blob_keyed_by_raw_key(self, raw_key):
        """Test the validation blob decrypts to the raw key using the raw key."""
        wrapped = key_wrap.wrap_key("pw", raw_key, ITERATIONS)

        assert crypto.decrypt_item_data(raw_key, base64.b64decode(wrapped.validation)) == raw_key

    def test_wrong_password(self, raw_key):
        """Test a wrong password is detected."""
        entry = make_entry("correct horse", raw_key)

        with pytest.raises(IncorrectPasswordError):
            key_wrap.unwrap_key("battery staple", entry)

    def test_mismatched_validation(self, raw_key):
        """Test a validation blob belonging to another key is rejected."""
        entry = make_entry("pw", raw_key)
        other = make_entry("pw", crypto.random_bytes(1024))
        entry.validation = other.validation

        with pytest.raises(IncorrectPasswordError):
            key_wrap.unwrap_key("pw", entry)

    def test_malformed_data(self, raw_key):
        """Test data that is not base64 is a format error."""
        entry = make_entry("pw", raw_key)
        entry.data = "not base64!"

        with pytest.raises(FormatError):
            key_wrap.unwrap_key("pw", entry)

    def test_unwrap_keys(self, raw_key):
        """Test unwrapping several entries keeps their identifiers."""
        entries = [make_entry("pw", raw_key), make_entry("pw", b"second key")]

        unwrapped = key_wrap.unwrap_keys(entries, "pw")

        assert [k.identifier for k in unwrapped] == [e.identifier for e in entries]
        assert unwrapped[1].key == b"second key"


class TestRewrapKey:
    """Tests for changing the wrapping password."""

    def test_rewrap(self, raw_key):
        """Test the new password works and the old one does not."""
        entry = make_entry("old", raw_key, level="SL5")

        new_entry = key_wrap.rewrap_key(entry, "old", "new")

        assert new_entry.identifier == entry.identifier
        assert new_entry.level == "SL5"
        assert new_entry.iterations == ITERATIONS
        assert key_wrap.unwrap_key("new", new_entry) == raw_key
        with pytest.raises(IncorrectPasswordError):
            key_wrap.unwrap_key("old", new_entry)

    def test_rewrap_with_new_iterations(self, raw_key):
        """Test the work factor can be changed."""
        entry = make_entry("old", raw_key)

        new_entry = key_wrap.rewrap_key(entry, "old", "new", iterations=ITERATIONS * 2)

        assert new_entry.iterations == ITERATIONS * 2
        assert key_wrap.unwrap_key("new", new_entry) == raw_key

    def test_rewrap_wrong_old_password(self, raw_key):
        """Test rewrap refuses a wrong old password."""
        entry = make_entry("old", raw_key)

        with pytest.raises(IncorrectPasswordError):
            key_wrap.rewrap_key(entry, "wrong", "new")


class TestEncryptionKeyEntry:
    """Tests for the encryptionKeys.js entry mapping."""

    def test_dict_roundtrip(self):
        """Test to_dict/from_dict preserve all fields."""
        entry = EncryptionKeyEntry(identifier="ID", data="DATA", validation="VAL", iterations=1000, level="SL3")

        assert EncryptionKeyEntry.from_dict(entry.to_dict()) == entry

    def test_from_dict_missing_field(self):
        """Test entries without data are rejected."""
        with pytest.raises(FormatError):
            EncryptionKeyEntry.from_dict({"identifier": "ID", "validation": "VAL"})
