"""Test helper utilities for the sqlsync test suite."""

from tests.helpers.cli_assertions import (
    assert_command_failed,
    assert_command_success,
    assert_error_message,
    assert_output_contains,
)
from tests.helpers.fake_database import FakeDatabase, MemoryStateRepository
from tests.helpers.fake_index import FakeSearchIndex, RecordingSleep

__all__ = [
    "FakeDatabase",
    "FakeSearchIndex",
    "MemoryStateRepository",
    "RecordingSleep",
    "assert_command_failed",
    "assert_command_success",
    "assert_error_message",
    "assert_output_contains",
]
