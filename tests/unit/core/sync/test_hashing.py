"""Tests for row fingerprinting and key normalization."""

import uuid

import pytest

from sqlsync.core.sync.hashing import (
    KeyNormalizer,
    RowHasher,
    compute_content_hash,
    encode_value,
)
from sqlsync.domain.entities import KeyKind, NormalizedKey
from sqlsync.domain.exceptions import InvalidKeyValue, UnsupportedKeyType


class TestContentHash:
    """Tests for the canonical encoding and content hash."""

    def test_same_fields_same_hash(self) -> None:
        """Hashing the same payload twice yields the same hash."""
        fields = {"name": "Ada", "age": 36, "score": 1.5, "bio": None}
        assert compute_content_hash(fields) == compute_content_hash(dict(fields))

    def test_field_order_does_not_matter(self) -> None:
        """Mapping order is irrelevant; fields are ordered by name."""
        assert compute_content_hash({"a": 1, "b": "x"}) == compute_content_hash(
            {"b": "x", "a": 1}
        )

    def test_changing_one_field_changes_hash(self) -> None:
        """Changing any single value changes the hash."""
        base = {"name": "Ada", "email": "ada@example.com"}
        changed = {"name": "Ada", "email": "ada@example.org"}
        assert compute_content_hash(base) != compute_content_hash(changed)

    def test_hash_is_blake3_hex(self) -> None:
        """Hash is 64 lowercase hex characters."""
        digest = compute_content_hash({"name": "Ada"})
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)

    def test_null_distinct_from_empty_string(self) -> None:
        """A null field never hashes like empty text."""
        assert compute_content_hash({"x": None}) != compute_content_hash({"x": ""})

    def test_null_field_hashes_like_absent_field(self) -> None:
        """A new column left null does not change an existing fingerprint."""
        before = compute_content_hash({"name": "Ada"})
        assert compute_content_hash({"name": "Ada", "phone": None}) == before
        assert compute_content_hash({"name": "Ada", "phone": "555"}) != before

    def test_types_do_not_collide(self) -> None:
        """Equal-looking values of different types hash differently."""
        hashes = {
            compute_content_hash({"x": 1}),
            compute_content_hash({"x": "1"}),
            compute_content_hash({"x": 1.0}),
            compute_content_hash({"x": True}),
            compute_content_hash({"x": b"1"}),
        }
        assert len(hashes) == 5

    def test_field_boundaries_are_unambiguous(self) -> None:
        """Moving text between adjacent fields changes the hash."""
        assert compute_content_hash({"a": "xy", "b": ""}) != compute_content_hash(
            {"a": "x", "b": "y"}
        )

    def test_integer_encoding_is_fixed_width_big_endian(self) -> None:
        """Integers encode as a tag plus 8 big-endian bytes."""
        assert encode_value(1) == b"i" + b"\x00" * 7 + b"\x01"
        assert encode_value(-1) == b"i" + b"\xff" * 8

    def test_float_encoding_is_ieee754(self) -> None:
        """Floats encode as their big-endian IEEE-754 bit pattern."""
        assert encode_value(1.0) == b"f" + bytes.fromhex("3ff0000000000000")

    def test_nan_payloads_hash_equal(self) -> None:
        """Every NaN encodes to the same bytes."""
        assert encode_value(float("nan")) == encode_value(-float("nan"))

    def test_big_integers_supported(self) -> None:
        """Integers beyond 64 bits still encode deterministically."""
        assert encode_value(2**80) == encode_value(2**80)
        assert encode_value(2**80) != encode_value(2**80 + 1)


class TestKeyNormalizer:
    """Tests for primary key resolution and normalization."""

    def test_integer_key(self, snapshot_factory) -> None:
        """INTEGER key columns produce integer keys."""
        normalizer = KeyNormalizer.for_snapshot(snapshot_factory())
        key = normalizer.normalize(42)
        assert key == NormalizedKey.integer(42)
        assert key.kind is KeyKind.INTEGER

    def test_integer_key_from_numeric_text(self, snapshot_factory) -> None:
        """Numeric text in an integer column normalizes to the same key."""
        normalizer = KeyNormalizer.for_snapshot(snapshot_factory())
        assert normalizer.normalize("42") == normalizer.normalize(42)

    def test_bigint_declared_type(self, snapshot_factory) -> None:
        """Any declared type containing INT is an integer key."""
        snapshot = snapshot_factory(columns=[("id", "BIGINT"), ("name", "TEXT")])
        assert KeyNormalizer.for_snapshot(snapshot).kind is KeyKind.INTEGER

    def test_text_key(self, snapshot_factory) -> None:
        """Text key columns keep the value as-is."""
        snapshot = snapshot_factory(columns=[("slug", "VARCHAR(64)")], primary_key=("slug",))
        key = KeyNormalizer.for_snapshot(snapshot).normalize("hello-world")
        assert key == NormalizedKey.text("hello-world")

    def test_uuid_key_canonical_form(self, snapshot_factory) -> None:
        """UUID keys normalize to lower-case hyphenated form from any input."""
        snapshot = snapshot_factory(columns=[("id", "UUID")])
        normalizer = KeyNormalizer.for_snapshot(snapshot)
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")

        forms = [
            "12345678-1234-5678-1234-567812345678",
            "12345678123456781234567812345678",
            "{12345678-1234-5678-1234-567812345678}".upper(),
            value,
            value.bytes,
        ]
        keys = {normalizer.normalize(form) for form in forms}
        assert keys == {NormalizedKey.text("12345678-1234-5678-1234-567812345678")}

    def test_invalid_uuid_rejected(self, snapshot_factory) -> None:
        """Malformed UUID values raise InvalidKeyValue."""
        normalizer = KeyNormalizer.for_snapshot(snapshot_factory(columns=[("id", "UUID")]))
        with pytest.raises(InvalidKeyValue):
            normalizer.normalize("not-a-uuid")

    def test_null_key_rejected(self, snapshot_factory) -> None:
        """Null keys raise InvalidKeyValue."""
        normalizer = KeyNormalizer.for_snapshot(snapshot_factory())
        with pytest.raises(InvalidKeyValue, match="Null"):
            normalizer.normalize(None)

    def test_out_of_range_integer_rejected(self, snapshot_factory) -> None:
        """Integer keys outside the signed 64-bit range are rejected."""
        normalizer = KeyNormalizer.for_snapshot(snapshot_factory())
        with pytest.raises(InvalidKeyValue, match="64-bit"):
            normalizer.normalize(2**63)

    def test_non_numeric_text_in_integer_column_rejected(self, snapshot_factory) -> None:
        """Text that is not an integer cannot be an integer key."""
        normalizer = KeyNormalizer.for_snapshot(snapshot_factory())
        with pytest.raises(InvalidKeyValue):
            normalizer.normalize("abc")

    def test_composite_key_unsupported(self, snapshot_factory) -> None:
        """Multi-column keys raise UnsupportedKeyType."""
        snapshot = snapshot_factory(
            columns=[("a", "INTEGER"), ("b", "INTEGER")], primary_key=("a", "b")
        )
        with pytest.raises(UnsupportedKeyType, match="composite"):
            KeyNormalizer.for_snapshot(snapshot)

    def test_missing_key_unsupported(self, snapshot_factory) -> None:
        """Tables without a primary key raise UnsupportedKeyType."""
        with pytest.raises(UnsupportedKeyType, match="no primary key"):
            KeyNormalizer.for_snapshot(snapshot_factory(primary_key=()))

    def test_unsupported_declared_type(self, snapshot_factory) -> None:
        """Key columns of other types (e.g. REAL) are unsupported."""
        snapshot = snapshot_factory(columns=[("id", "REAL")])
        with pytest.raises(UnsupportedKeyType, match="unsupported type"):
            KeyNormalizer.for_snapshot(snapshot)


class TestRowHasher:
    """Tests for fingerprinting whole rows."""

    def test_key_excluded_from_hash(self, snapshot_factory) -> None:
        """Rows differing only in key have the same content hash."""
        hasher = RowHasher(snapshot_factory())
        first = hasher.fingerprint({"id": 1, "name": "a"})
        second = hasher.fingerprint({"id": 2, "name": "a"})
        assert first.content_hash == second.content_hash
        assert first.key != second.key

    def test_fields_to_index_limits_hash(self, snapshot_factory) -> None:
        """Columns outside fields_to_index do not affect the hash."""
        snapshot = snapshot_factory(
            columns=[("id", "INTEGER"), ("name", "TEXT"), ("secret", "TEXT")]
        )
        hasher = RowHasher(snapshot, fields_to_index=["name"])
        first = hasher.fingerprint({"id": 1, "name": "a", "secret": "x"})
        second = hasher.fingerprint({"id": 1, "name": "a", "secret": "y"})
        assert first == second

    def test_fingerprint_rows_builds_documents(self, snapshot_factory) -> None:
        """Each fingerprinted row carries a document with its key."""
        hasher = RowHasher(snapshot_factory())
        rows, skipped = hasher.fingerprint_rows([{"id": 1, "name": "a"}])
        assert skipped == 0
        assert rows[0].document == {"id": 1, "name": "a"}
        assert rows[0].key == NormalizedKey.integer(1)

    def test_rows_with_invalid_keys_skipped(self, snapshot_factory) -> None:
        """Rows with null keys are skipped and counted, others kept."""
        hasher = RowHasher(snapshot_factory())
        rows, skipped = hasher.fingerprint_rows(
            [{"id": None, "name": "a"}, {"id": 2, "name": "b"}, {"id": "x", "name": "c"}]
        )
        assert skipped == 2
        assert [row.key for row in rows] == [NormalizedKey.integer(2)]
