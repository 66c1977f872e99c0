"""Meilisearch implementation of the SearchIndex port.

Talks to the Meilisearch HTTP API with a shared httpx.Client, which is safe
for concurrent use by the dispatcher's worker threads. Transport failures and
408/429/5xx responses raise TransientIndexError; every other 4xx response and
every failed task raises PermanentIndexError.

Write endpoints are asynchronous on the Meilisearch side: they return a task.
With ``wait_for_tasks`` enabled the client polls each task until it finishes,
so document errors surface on the batch that caused them.
"""

import logging
import time
from collections.abc import Callable, Collection, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Self

import httpx

from sqlsync.domain.config import MeilisearchConfig, TableConfig
from sqlsync.domain.exceptions import PermanentIndexError, TransientIndexError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({408, 429})
_FINISHED_TASK_STATUSES = frozenset({"succeeded", "failed", "canceled"})
# Error codes of failed tasks that leave the index in the wanted state
_IGNORED_TASK_CODES = frozenset({"index_already_exists", "index_not_found"})


@dataclass(frozen=True)
class IndexSettings:
    """Per-index settings applied when the index is configured.

    Attributes:
        searchable_attributes: Explicit searchable attributes (None = all)
        ranking_rules: Custom ranking rules (None = keep index default)
        typo_tolerance: Typo tolerance toggle (None = keep index default)
    """

    searchable_attributes: tuple[str, ...] | None = None
    ranking_rules: tuple[str, ...] | None = None
    typo_tolerance: bool | None = None

    @classmethod
    def from_table_config(cls, table: TableConfig) -> "IndexSettings":
        return cls(
            searchable_attributes=(
                tuple(table.searchable_attributes)
                if table.searchable_attributes is not None
                else None
            ),
            ranking_rules=(
                tuple(table.ranking_rules) if table.ranking_rules is not None else None
            ),
            typo_tolerance=(
                table.typo_tolerance.enabled if table.typo_tolerance is not None else None
            ),
        )


class MeilisearchIndex:
    """SearchIndex backed by a Meilisearch server.

    Args:
        config: Host, API key and timeouts.
        settings: Index settings keyed by index name.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        sleep: Sleep function used between task polls.
    """

    def __init__(
        self,
        config: MeilisearchConfig,
        settings: Mapping[str, IndexSettings] | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.settings = dict(settings or {})
        self._sleep = sleep

        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self.client = httpx.Client(
            base_url=config.host.rstrip("/"),
            headers=headers,
            timeout=config.timeout_seconds,
            transport=transport,
        )
        logger.debug("Meilisearch client initialized: %s", config.host)

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send one request and map failures to index errors."""
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientIndexError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientIndexError(
                f"{method} {path} failed: {e}",
                hint=f"Check that Meilisearch is reachable at {self.config.host}",
            ) from e

        status = response.status_code
        if status < 400:
            return response

        message = self._error_message(response)
        if status in _TRANSIENT_STATUSES or status >= 500:
            raise TransientIndexError(
                f"{method} {path} returned {status}: {message}", status=status
            )
        hint = None
        if status in (401, 403):
            hint = "Check meilisearch.api_key in the config"
        raise PermanentIndexError(
            f"{method} {path} returned {status}: {message}", status=status, hint=hint
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("message", "")
            return f"{message} ({code})" if code else str(message)
        return str(body)

    def _wait_for_task(self, response: httpx.Response) -> None:
        """Poll the task behind a write response until it finishes."""
        if not self.config.wait_for_tasks:
            return
        try:
            task_uid = response.json()["taskUid"]
        except (ValueError, KeyError, TypeError):
            return

        deadline = time.monotonic() + self.config.task_timeout_seconds
        delay = 0.05
        while True:
            task = self._request("GET", f"/tasks/{task_uid}").json()
            status = task.get("status")
            if status in _FINISHED_TASK_STATUSES:
                break
            if time.monotonic() >= deadline:
                raise TransientIndexError(
                    f"Task {task_uid} still {status} after "
                    f"{self.config.task_timeout_seconds}s"
                )
            self._sleep(delay)
            delay = min(delay * 2, 1.0)

        if status == "succeeded":
            return
        error = task.get("error") or {}
        code = error.get("code")
        if code in _IGNORED_TASK_CODES:
            logger.debug("Task %s finished with %s, ignoring", task_uid, code)
            return
        raise PermanentIndexError(
            f"Task {task_uid} ({task.get('type')}) {status}: "
            f"{error.get('message', 'no error details')}"
        )

    # =========================================================================
    # SearchIndex operations
    # =========================================================================

    def index_exists(self, index_name: str) -> bool:
        try:
            self._request("GET", f"/indexes/{index_name}")
        except PermanentIndexError as e:
            if e.status == 404:
                return False
            raise
        return True

    def create_index(self, index_name: str, primary_key: str) -> None:
        response = self._request(
            "POST", "/indexes", json={"uid": index_name, "primaryKey": primary_key}
        )
        self._wait_for_task(response)
        logger.info("Created index '%s' (primary key '%s')", index_name, primary_key)

    def delete_index(self, index_name: str) -> None:
        try:
            response = self._request("DELETE", f"/indexes/{index_name}")
        except PermanentIndexError as e:
            if e.status == 404:
                return
            raise
        self._wait_for_task(response)
        logger.info("Deleted index '%s'", index_name)

    def configure_index(
        self,
        index_name: str,
        fields_add: Collection[str],
        fields_remove: Collection[str],
        primary_key: str,
    ) -> None:
        """Create the index if missing and apply its settings.

        Explicit searchable attributes are pruned of removed fields. Added
        fields need no settings change unless they are listed explicitly,
        since an index without an explicit list searches every attribute.
        """
        if not self.index_exists(index_name):
            self.create_index(index_name, primary_key)

        settings = self.settings.get(index_name, IndexSettings())
        body: dict[str, Any] = {}
        if settings.searchable_attributes is not None:
            removed = set(fields_remove)
            body["searchableAttributes"] = [
                name for name in settings.searchable_attributes if name not in removed
            ]
        if settings.ranking_rules is not None:
            body["rankingRules"] = list(settings.ranking_rules)
        if settings.typo_tolerance is not None:
            body["typoTolerance"] = {"enabled": settings.typo_tolerance}

        if body:
            response = self._request("PATCH", f"/indexes/{index_name}/settings", json=body)
            self._wait_for_task(response)
        logger.debug(
            "Configured index '%s' (+%s -%s)",
            index_name,
            sorted(fields_add),
            sorted(fields_remove),
        )

    def upsert_batch(self, index_name: str, documents: Sequence[dict[str, Any]]) -> None:
        """Add or replace whole documents."""
        if not documents:
            return
        response = self._request(
            "POST", f"/indexes/{index_name}/documents", json=list(documents)
        )
        self._wait_for_task(response)
        logger.debug("Upserted %d document(s) into '%s'", len(documents), index_name)

    def delete_batch(self, index_name: str, keys: Sequence[int | str]) -> None:
        if not keys:
            return
        response = self._request(
            "POST", f"/indexes/{index_name}/documents/delete-batch", json=list(keys)
        )
        self._wait_for_task(response)
        logger.debug("Deleted %d document(s) from '%s'", len(keys), index_name)

    def recreate_index(self, index_name: str, primary_key: str) -> None:
        self.delete_index(index_name)
        self.create_index(index_name, primary_key)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        self.close()
        return False
