"""In-process invoice store.

Suitable for development and tests. A lock keeps each single-key operation
atomic across request threads; it never spans more than one operation.
"""

import threading

from services.invoices.models import Invoice, InvoiceStatus
from services.storage.base import InvoiceStore


class InMemoryInvoiceStore(InvoiceStore):
    """Dictionary-backed invoice store."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._order: dict[str, tuple[int, int]] = {}
        self._pending: dict[str, str] = {}
        self._indexes: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, invoice_id: str) -> Invoice | None:
        with self._lock:
            raw = self._records.get(invoice_id)
        if raw is None:
            return None
        return Invoice.model_validate_json(raw)

    def save(self, invoice: Invoice) -> None:
        # Records are stored serialized so callers never share mutable state
        raw = invoice.model_dump_json()
        with self._lock:
            self._write(invoice, raw)

    def compare_and_set(self, expected: Invoice, updated: Invoice) -> bool:
        expected_raw = expected.model_dump_json()
        raw = updated.model_dump_json()
        with self._lock:
            if self._records.get(expected.id) != expected_raw:
                return False
            self._write(updated, raw)
            return True

    def _write(self, invoice: Invoice, raw: str) -> None:
        self._records[invoice.id] = raw
        if invoice.id not in self._order:
            # (created_at, insertion order) breaks same-second ties newest first
            self._order[invoice.id] = (invoice.created_at, len(self._order))
        if invoice.status == InvoiceStatus.PENDING:
            self._pending[invoice.id] = invoice.merchant_destination
        else:
            self._pending.pop(invoice.id, None)

    def index_put(self, index: str, key: str, invoice_id: str, exclusive: bool = False) -> bool:
        with self._lock:
            entries = self._indexes.setdefault(index, {})
            if exclusive and key in entries:
                return False
            entries[key] = invoice_id
            return True

    def index_get(self, index: str, key: str) -> str | None:
        with self._lock:
            return self._indexes.get(index, {}).get(key)

    def scan_pending_by_destination(self, destination: str | None = None) -> list[Invoice]:
        with self._lock:
            invoice_ids = [
                invoice_id
                for invoice_id, invoice_destination in self._pending.items()
                if destination is None or invoice_destination == destination
            ]
            invoice_ids.sort(key=lambda invoice_id: self._order[invoice_id], reverse=True)
            raws = [self._records[invoice_id] for invoice_id in invoice_ids]
        return [Invoice.model_validate_json(raw) for raw in raws]

    def ping(self) -> bool:
        return True
