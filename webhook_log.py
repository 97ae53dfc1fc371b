"""
Append-only audit log of inbound payment notifications
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import List, Optional

from database import execute_query, execute_returning
from payment_models import WebhookLogEntry, WebhookOutcome

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


def _clamp_page(limit: int, offset: int):
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(0, int(offset))
    return limit, offset


class WebhookLog(ABC):
    """Audit trail; entries are never updated or deleted"""

    @abstractmethod
    async def append(self, entry: WebhookLogEntry) -> WebhookLogEntry:
        pass

    @abstractmethod
    async def list_entries(
        self,
        order_id: Optional[str] = None,
        outcome: Optional[WebhookOutcome] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> List[WebhookLogEntry]:
        """Entries in arrival order, optionally filtered by order and outcome"""


class InMemoryWebhookLog(WebhookLog):

    def __init__(self):
        self._entries: List[WebhookLogEntry] = []

    async def append(self, entry: WebhookLogEntry) -> WebhookLogEntry:
        stored = replace(entry, id=len(self._entries) + 1)
        self._entries.append(stored)
        return replace(stored)

    async def list_entries(
        self,
        order_id: Optional[str] = None,
        outcome: Optional[WebhookOutcome] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> List[WebhookLogEntry]:
        limit, offset = _clamp_page(limit, offset)
        matching = [
            entry for entry in self._entries
            if (order_id is None or entry.order_id == order_id)
            and (outcome is None or entry.outcome == outcome)
        ]
        return [replace(entry) for entry in matching[offset:offset + limit]]


class PostgresWebhookLog(WebhookLog):
    """PostgreSQL-backed audit log (webhook_log table)"""

    async def append(self, entry: WebhookLogEntry) -> WebhookLogEntry:
        row = await execute_returning(
            """
            INSERT INTO webhook_log (order_id, raw_payload, received_at, outcome, detail)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (entry.order_id, entry.raw_payload, entry.received_at, entry.outcome.value, entry.detail)
        )
        return replace(entry, id=row['id'] if row else None)

    async def list_entries(
        self,
        order_id: Optional[str] = None,
        outcome: Optional[WebhookOutcome] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> List[WebhookLogEntry]:
        limit, offset = _clamp_page(limit, offset)
        clauses = []
        params: list = []
        if order_id is not None:
            clauses.append("order_id = %s")
            params.append(order_id)
        if outcome is not None:
            clauses.append("outcome = %s")
            params.append(outcome.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        rows = await execute_query(
            f"""
            SELECT id, order_id, raw_payload, received_at, outcome, detail
            FROM webhook_log {where}
            ORDER BY id
            LIMIT %s OFFSET %s
            """,
            tuple(params)
        )
        return [
            WebhookLogEntry(
                id=row['id'],
                order_id=row.get('order_id'),
                raw_payload=row['raw_payload'],
                received_at=row['received_at'],
                outcome=WebhookOutcome(row['outcome']),
                detail=row.get('detail') or ''
            )
            for row in rows
        ]
