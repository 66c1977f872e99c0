"""Row fingerprinting and primary key normalization.

Turns a raw database row into a NormalizedKey and a RowFingerprint. The
content hash is blake3 over a canonical byte encoding of the row's non-key
fields, so it is stable across process restarts and platforms:

- fields are ordered by column name
- every field is written as a length-prefixed UTF-8 name followed by a
  one-byte type tag and the value bytes
- integers are 8-byte big-endian two's complement, floats their IEEE-754
  bit pattern, text UTF-8; null fields are left out

Composite primary keys are not supported and raise UnsupportedKeyType.
"""

import logging
import math
import struct
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import blake3

from sqlsync.core.sync.documents import build_document
from sqlsync.domain.entities import (
    INT64_MAX,
    INT64_MIN,
    FingerprintedRow,
    KeyKind,
    NormalizedKey,
    RowFingerprint,
    SchemaSnapshot,
)
from sqlsync.domain.exceptions import InvalidKeyValue, UnsupportedKeyType

logger = logging.getLogger(__name__)

# Declared-type fragments, matched against the upper-cased declared type
# the same way SQLite derives column affinity.
_INTEGER_TYPE_MARKERS = ("INT",)
_UUID_TYPE_MARKERS = ("UUID", "GUID")
_TEXT_TYPE_MARKERS = ("CHAR", "CLOB", "TEXT", "STRING")

_NULL_TAG = b"n"
_BOOL_TAG = b"?"
_INT_TAG = b"i"
_BIGINT_TAG = b"I"
_FLOAT_TAG = b"f"
_TEXT_TAG = b"s"
_BYTES_TAG = b"b"
_OTHER_TAG = b"o"


def _length_prefixed(data: bytes) -> bytes:
    return len(data).to_bytes(4, "big") + data


def encode_value(value: Any) -> bytes:
    """Encode one field value into its canonical byte form.

    Args:
        value: A value as returned by the database driver.

    Returns:
        Type tag followed by the value bytes.
    """
    if value is None:
        return _NULL_TAG
    # bool before int (bool is a subclass of int)
    if isinstance(value, bool):
        return _BOOL_TAG + (b"\x01" if value else b"\x00")
    if isinstance(value, int):
        if INT64_MIN <= value <= INT64_MAX:
            return _INT_TAG + value.to_bytes(8, "big", signed=True)
        width = (value.bit_length() + 8) // 8
        return _BIGINT_TAG + _length_prefixed(value.to_bytes(width, "big", signed=True))
    if isinstance(value, float):
        if math.isnan(value):
            value = math.nan  # one bit pattern for every NaN payload
        return _FLOAT_TAG + struct.pack(">d", value)
    if isinstance(value, str):
        return _TEXT_TAG + _length_prefixed(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _BYTES_TAG + _length_prefixed(bytes(value))
    type_name = type(value).__name__.encode("utf-8")
    return _OTHER_TAG + _length_prefixed(type_name) + _length_prefixed(
        str(value).encode("utf-8")
    )


def compute_content_hash(fields: Mapping[str, Any]) -> str:
    """Hash field values independently of their mapping order.

    Null fields are left out, so a null value hashes the same as an absent
    column. Adding a nullable column keeps existing fingerprints valid for
    rows that leave it empty.

    Args:
        fields: Column name to value, primary key columns already excluded.

    Returns:
        Hex-encoded blake3 hash.
    """
    hasher = blake3.blake3()
    for name in sorted(fields):
        if fields[name] is None:
            continue
        hasher.update(_length_prefixed(name.encode("utf-8")))
        hasher.update(encode_value(fields[name]))
    return hasher.hexdigest()


@dataclass(frozen=True)
class KeyNormalizer:
    """Converts primary key values of one table into NormalizedKeys.

    Attributes:
        column: Primary key column name.
        kind: Kind of every key produced.
        is_uuid: Whether text keys are parsed and canonicalized as UUIDs.
    """

    column: str
    kind: KeyKind
    is_uuid: bool = False

    @classmethod
    def for_snapshot(cls, snapshot: SchemaSnapshot) -> "KeyNormalizer":
        """Resolve the key column and kind from a schema snapshot.

        Args:
            snapshot: Current schema of the table.

        Returns:
            Normalizer for the table's single-column primary key.

        Raises:
            UnsupportedKeyType: If the table has no key, a composite key,
                or a key column whose declared type cannot be normalized.
        """
        if not snapshot.primary_key:
            raise UnsupportedKeyType(
                f"Table '{snapshot.table}' has no primary key",
                hint="Declare a primary key or set primary_key in the table config",
            )
        if len(snapshot.primary_key) > 1:
            raise UnsupportedKeyType(
                f"Table '{snapshot.table}' has a composite primary key "
                f"({', '.join(snapshot.primary_key)}); only single-column keys are supported",
            )

        name = snapshot.primary_key[0]
        column = snapshot.column(name)
        if column is None:
            raise UnsupportedKeyType(
                f"Primary key column '{name}' not found in table '{snapshot.table}'"
            )

        declared = column.normalized_type
        if any(marker in declared for marker in _INTEGER_TYPE_MARKERS):
            return cls(column=name, kind=KeyKind.INTEGER)
        if any(marker in declared for marker in _UUID_TYPE_MARKERS):
            return cls(column=name, kind=KeyKind.TEXT, is_uuid=True)
        if any(marker in declared for marker in _TEXT_TYPE_MARKERS):
            return cls(column=name, kind=KeyKind.TEXT)

        raise UnsupportedKeyType(
            f"Primary key column '{name}' of table '{snapshot.table}' has "
            f"unsupported type {column.declared_type!r}",
            hint="Primary keys must be integer, text or UUID columns",
        )

    def normalize(self, value: Any) -> NormalizedKey:
        """Normalize one key value.

        Args:
            value: Raw key value from the database.

        Returns:
            The canonical key.

        Raises:
            InvalidKeyValue: If the value is null or cannot be converted.
        """
        if value is None:
            raise InvalidKeyValue(f"Null value in primary key column '{self.column}'")
        if self.kind is KeyKind.INTEGER:
            return NormalizedKey.integer(self._to_int(value))
        if self.is_uuid:
            return NormalizedKey.text(self._to_uuid(value))
        return NormalizedKey.text(self._to_text(value))

    def _to_int(self, value: Any) -> int:
        if isinstance(value, bool):
            raise InvalidKeyValue(f"Boolean value {value!r} is not an integer key")
        if isinstance(value, int):
            number = value
        elif isinstance(value, float) and value.is_integer():
            number = int(value)
        elif isinstance(value, str):
            try:
                number = int(value.strip())
            except ValueError:
                raise InvalidKeyValue(f"Value {value!r} is not an integer key") from None
        else:
            raise InvalidKeyValue(f"Value {value!r} is not an integer key")

        if not INT64_MIN <= number <= INT64_MAX:
            raise InvalidKeyValue(f"Integer key {number} is outside the 64-bit range")
        return number

    def _to_uuid(self, value: Any) -> str:
        try:
            if isinstance(value, uuid.UUID):
                parsed = value
            elif isinstance(value, (bytes, bytearray)) and len(value) == 16:
                parsed = uuid.UUID(bytes=bytes(value))
            else:
                parsed = uuid.UUID(str(value).strip())
        except ValueError:
            raise InvalidKeyValue(f"Value {value!r} is not a valid UUID") from None
        # Canonical form: lower-case, hyphenated
        return str(parsed)

    def _to_text(self, value: Any) -> str:
        if isinstance(value, (bytes, bytearray, memoryview)):
            raise InvalidKeyValue(f"Binary value is not a text key in '{self.column}'")
        text = str(value)
        if not text:
            raise InvalidKeyValue(f"Empty text key in column '{self.column}'")
        return text


class RowHasher:
    """Fingerprints rows of one table against one schema snapshot.

    Args:
        snapshot: Current schema; determines the key column and kind.
        fields_to_index: Columns to hash and copy into documents (empty = all).
        max_text_length: Document text fields are truncated to this length.

    Raises:
        UnsupportedKeyType: If the snapshot's primary key cannot be normalized.
    """

    def __init__(
        self,
        snapshot: SchemaSnapshot,
        fields_to_index: Iterable[str] = (),
        max_text_length: int = 10_000_000,
    ) -> None:
        self._normalizer = KeyNormalizer.for_snapshot(snapshot)
        self._key_columns = frozenset(snapshot.primary_key)
        self._fields = tuple(fields_to_index)
        self._max_text_length = max_text_length

    @property
    def key_column(self) -> str:
        return self._normalizer.column

    def indexed_fields(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Select the non-key fields of a row that take part in the hash."""
        names = self._fields or tuple(row)
        return {
            name: row[name]
            for name in names
            if name in row and name not in self._key_columns
        }

    def fingerprint(self, row: Mapping[str, Any]) -> RowFingerprint:
        """Compute the fingerprint of one row.

        Raises:
            InvalidKeyValue: If the row's key is null or unusable.
        """
        key = self._normalizer.normalize(row.get(self.key_column))
        return RowFingerprint(key=key, content_hash=compute_content_hash(self.indexed_fields(row)))

    def fingerprint_rows(
        self, rows: Iterable[Mapping[str, Any]]
    ) -> tuple[list[FingerprintedRow], int]:
        """Fingerprint rows and build their documents.

        Rows with a null or invalid key are skipped and counted.

        Args:
            rows: Raw rows from the database.

        Returns:
            Tuple of (fingerprinted rows, number of skipped rows).
        """
        results: list[FingerprintedRow] = []
        skipped = 0
        for row in rows:
            try:
                fingerprint = self.fingerprint(row)
            except InvalidKeyValue as e:
                skipped += 1
                # Only log the first few to keep large tables readable
                if skipped <= 5:
                    logger.debug("Skipping row: %s", e.message)
                continue
            fields = self.indexed_fields(row)
            document = build_document(
                self.key_column,
                fingerprint.key,
                fields,
                max_text_length=self._max_text_length,
            )
            results.append(FingerprintedRow(fingerprint=fingerprint, document=document))

        if skipped:
            logger.warning(
                "Skipped %d row(s) with a null or invalid value in key column '%s'",
                skipped,
                self.key_column,
            )
        return results, skipped
