"""Search index port interface.

Defines the index service operations the sync engine consumes.
Implementations should be in adapters/ layer.
"""

from collections.abc import Collection, Sequence
from typing import Any, Protocol


class SearchIndex(Protocol):
    """Protocol for search index write operations.

    Implementations must be safe for concurrent use. Every method raises
    TransientIndexError for retryable failures and PermanentIndexError for
    failures that will not go away by retrying.
    """

    def configure_index(
        self,
        index_name: str,
        fields_add: Collection[str],
        fields_remove: Collection[str],
        primary_key: str,
    ) -> None:
        """Create the index if needed and update its field configuration.

        Args:
            index_name: Target index.
            fields_add: Attributes now present in documents.
            fields_remove: Attributes no longer present in documents.
            primary_key: Document identifier attribute.
        """
        ...

    def upsert_batch(self, index_name: str, documents: Sequence[dict[str, Any]]) -> None:
        """Add or replace documents.

        Args:
            index_name: Target index.
            documents: Complete documents, each carrying its primary key.
        """
        ...

    def delete_batch(self, index_name: str, keys: Sequence[int | str]) -> None:
        """Delete documents by identifier.

        Args:
            index_name: Target index.
            keys: Document identifiers to delete.
        """
        ...

    def recreate_index(self, index_name: str, primary_key: str) -> None:
        """Drop the index and create it again empty.

        Args:
            index_name: Target index.
            primary_key: Document identifier attribute of the new index.
        """
        ...
