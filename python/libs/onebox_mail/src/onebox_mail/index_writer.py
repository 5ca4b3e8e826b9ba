"""Bulk-upsert sinks for email records."""

import logging
import threading
from collections.abc import Sequence
from typing import Any, Protocol

from elasticsearch import Elasticsearch

from onebox_common.config import ElasticsearchConfig

from onebox_mail.models import EmailRecord, UpsertOutcome

logger = logging.getLogger(__name__)


class IndexWriter(Protocol):
    """Durable sink that inserts-or-overwrites records by id.

    Per-record failures are reported in the returned outcomes; an exception
    means the call as a whole did not reach the sink.
    """

    def bulk_upsert(self, records: Sequence[EmailRecord]) -> list[UpsertOutcome]: ...


class ElasticsearchIndexWriter:
    """IndexWriter backed by an Elasticsearch index."""

    def __init__(
        self,
        config: ElasticsearchConfig,
        client: Elasticsearch | None = None,
    ) -> None:
        """Initialize the writer, building a client from config if none is given."""
        self.config = config
        self._client = client or Elasticsearch(config.url, api_key=config.api_key)

    def _build_operations(self, records: Sequence[EmailRecord]) -> list[dict[str, Any]]:
        operations: list[dict[str, Any]] = []
        for record in records:
            operations.append({"index": {"_index": self.config.index, "_id": record.id}})
            operations.append(record.to_document())
        return operations

    def bulk_upsert(self, records: Sequence[EmailRecord]) -> list[UpsertOutcome]:
        """
        Index records in a single bulk request.

        Args:
            records: Records to write, keyed by ``record.id``

        Returns:
            One outcome per record, in input order
        """
        if not records:
            return []

        response = self._client.bulk(
            operations=self._build_operations(records),
            refresh=self.config.refresh,
        )

        outcomes: list[UpsertOutcome] = []
        items = response.get("items", [])
        for record, item in zip(records, items, strict=False):
            result = item.get("index", {})
            error = result.get("error")
            if error:
                reason = error.get("reason", str(error)) if isinstance(error, dict) else str(error)
                outcomes.append(UpsertOutcome(record_id=record.id, ok=False, error=reason))
            else:
                outcomes.append(UpsertOutcome(record_id=record.id, ok=True))

        # Missing items means the server did not acknowledge those records
        for record in records[len(items) :]:
            outcomes.append(
                UpsertOutcome(record_id=record.id, ok=False, error="no bulk response item")
            )

        if response.get("errors"):
            logger.warning(
                "Bulk upsert to %s finished with %d failed records",
                self.config.index,
                sum(1 for o in outcomes if not o.ok),
            )
        return outcomes


class InMemoryIndexWriter:
    """Dict-backed IndexWriter for local runs and tests."""

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    def bulk_upsert(self, records: Sequence[EmailRecord]) -> list[UpsertOutcome]:
        with self._lock:
            self.calls.append([r.id for r in records])
            for record in records:
                self.documents[record.id] = record.to_document()
        return [UpsertOutcome(record_id=r.id, ok=True) for r in records]
