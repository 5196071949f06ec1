"""Reconciliation engine.

Maps payment events onto invoices and applies the pending -> paid transition
exactly once. Orchestration order:

0. A settlement reference that already settled an invoice is ``already_paid``.
1. Reference match on the event's referenced accounts.
2. Otherwise fallback match: zero candidates is ``no_match``, one is settled,
   several are flagged for review and left pending.

Every write to an existing invoice is conditional on its stored record still
being pending, so a paid or declined invoice is never rewritten.
"""

import logging
from collections.abc import Callable

from prometheus_client import Counter

from services.invoices.models import (
    Invoice,
    InvoiceStatus,
    MatchStrategy,
    PaymentEvent,
    ReconcileOutcome,
    ReconcileResult,
    now_seconds,
)
from services.notifications.base import StatusNotifier, notify_status_change
from services.reconciliation.fallback_matcher import FallbackMatcher
from services.reconciliation.reference_matcher import ReferenceMatcher
from services.shared.errors import NotFoundError
from services.storage.base import SETTLEMENT_INDEX, InvoiceStore

logger = logging.getLogger(__name__)

reconcile_outcomes_total = Counter(
    "reconcile_outcomes_total",
    "Reconciliation outcomes by ingestion channel",
    ["channel", "outcome"],
)


class ReconciliationEngine:
    """Applies matchers and the idempotent paid transition."""

    def __init__(
        self,
        store: InvoiceStore,
        reference_matcher: ReferenceMatcher,
        fallback_matcher: FallbackMatcher,
        clock: Callable[[], int] = now_seconds,
        notifier: StatusNotifier | None = None,
    ) -> None:
        """Initialize engine.

        Args:
            store: Invoice store backend
            reference_matcher: Matching-key resolver
            fallback_matcher: Destination/amount/time matcher
            clock: Source of current unix time in seconds
            notifier: Receives paid transitions for status streams (optional)
        """
        self.store = store
        self.reference_matcher = reference_matcher
        self.fallback_matcher = fallback_matcher
        self._clock = clock
        self.notifier = notifier

    def reconcile(self, event: PaymentEvent, channel: str = "direct") -> ReconcileResult:
        """Reconcile one payment event against all invoices.

        Args:
            event: Normalized payment event
            channel: Ingestion channel label for metrics and logs

        Returns:
            Outcome with the invoices it touched
        """
        result = self._reconcile(event)
        self._record(result, channel)
        return result

    def _reconcile(self, event: PaymentEvent) -> ReconcileResult:
        settled = self._already_settled(event.settlement_ref)
        if settled is not None:
            return settled

        invoice = self.reference_matcher.match(event.referenced_accounts)
        if invoice is not None:
            return self._transition(invoice.id, event.settlement_ref, event.payer, MatchStrategy.REFERENCE)

        candidates = self.fallback_matcher.match(
            event.destination_account, event.amount, event.occurred_at
        )
        if not candidates:
            logger.info(
                f"No invoice matches settlement {event.settlement_ref} "
                f"(destination={event.destination_account}, amount={event.amount})"
            )
            return ReconcileResult(outcome=ReconcileOutcome.NO_MATCH, settlement_ref=event.settlement_ref)

        if len(candidates) == 1:
            return self._transition(
                candidates[0].id, event.settlement_ref, event.payer, MatchStrategy.FALLBACK
            )

        return self._flag_for_review(candidates, event.settlement_ref)

    def reconcile_for_invoice(
        self, event: PaymentEvent, invoice: Invoice, channel: str = "poll"
    ) -> ReconcileResult:
        """Reconcile one event against a single invoice, skipping the pending-set scan.

        A transfer carrying another invoice's matching key is never fallback
        matched to this one.

        Args:
            event: Normalized payment event
            invoice: The only invoice this event may settle
            channel: Ingestion channel label for metrics and logs

        Returns:
            Outcome scoped to this invoice
        """
        result = self._reconcile_for_invoice(event, invoice)
        self._record(result, channel)
        return result

    def _reconcile_for_invoice(self, event: PaymentEvent, invoice: Invoice) -> ReconcileResult:
        settled_id = self.store.index_get(SETTLEMENT_INDEX, event.settlement_ref)
        if settled_id is not None:
            if settled_id == invoice.id:
                return self._already_paid(invoice.id, event.settlement_ref, MatchStrategy.SETTLEMENT)
            return ReconcileResult(outcome=ReconcileOutcome.NO_MATCH, settlement_ref=event.settlement_ref)

        if invoice.matching_key in event.referenced_accounts:
            return self._transition(invoice.id, event.settlement_ref, event.payer, MatchStrategy.REFERENCE)

        referenced = self.reference_matcher.match(event.referenced_accounts)
        if referenced is not None:
            logger.debug(
                f"Settlement {event.settlement_ref} references invoice {referenced.id}, "
                f"not {invoice.id}"
            )
            return ReconcileResult(outcome=ReconcileOutcome.NO_MATCH, settlement_ref=event.settlement_ref)

        if self.fallback_matcher.is_candidate(
            invoice, event.destination_account, event.amount, event.occurred_at
        ):
            return self._transition(invoice.id, event.settlement_ref, event.payer, MatchStrategy.FALLBACK)

        return ReconcileResult(outcome=ReconcileOutcome.NO_MATCH, settlement_ref=event.settlement_ref)

    def settle(
        self, invoice_id: str, settlement_ref: str, payer: str | None = None, channel: str = "manual"
    ) -> ReconcileResult:
        """Mark an invoice paid with the given settlement reference.

        Raises:
            NotFoundError: If the invoice does not exist
        """
        if self.store.get(invoice_id) is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        result = self._transition(invoice_id, settlement_ref, payer, MatchStrategy.SETTLEMENT)
        self._record(result, channel)
        return result

    def _already_settled(self, settlement_ref: str) -> ReconcileResult | None:
        invoice_id = self.store.index_get(SETTLEMENT_INDEX, settlement_ref)
        if invoice_id is None:
            return None
        return self._already_paid(invoice_id, settlement_ref, MatchStrategy.SETTLEMENT)

    def _already_paid(
        self, invoice_id: str, settlement_ref: str, strategy: MatchStrategy
    ) -> ReconcileResult:
        logger.info(f"Settlement {settlement_ref} already applied to invoice {invoice_id}")
        return ReconcileResult(
            outcome=ReconcileOutcome.ALREADY_PAID,
            settlement_ref=settlement_ref,
            strategy=strategy,
            invoice_ids=[invoice_id],
        )

    def _transition(
        self,
        invoice_id: str,
        settlement_ref: str,
        payer: str | None,
        strategy: MatchStrategy,
    ) -> ReconcileResult:
        """Idempotent pending -> paid transition, conditional on the stored record."""

        def mark_paid(current: Invoice) -> Invoice:
            return current.model_copy(
                update={
                    "status": InvoiceStatus.PAID,
                    "settlement_ref": settlement_ref,
                    "paid_at": max(self._clock(), current.created_at),
                    "payer_identity": payer,
                    "needs_review": False,
                }
            )

        paid = self.store.update_if_pending(invoice_id, mark_paid)
        if paid is None:
            return self._not_transitioned(invoice_id, settlement_ref, strategy)

        self.store.index_put(SETTLEMENT_INDEX, settlement_ref, invoice_id)
        notify_status_change(self.notifier, invoice_id, InvoiceStatus.PAID.value)

        logger.info(
            f"Invoice {invoice_id} paid by settlement {settlement_ref} "
            f"via {strategy.value} match (payer={payer})"
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.MATCHED,
            settlement_ref=settlement_ref,
            strategy=strategy,
            invoice_ids=[invoice_id],
        )

    def _not_transitioned(
        self, invoice_id: str, settlement_ref: str, strategy: MatchStrategy
    ) -> ReconcileResult:
        """Outcome for an invoice that was no longer pending at write time."""
        invoice = self.store.get(invoice_id)
        if invoice is None:
            logger.warning(f"Invoice {invoice_id} vanished before settlement {settlement_ref}")
            return ReconcileResult(outcome=ReconcileOutcome.NO_MATCH, settlement_ref=settlement_ref)

        if invoice.status == InvoiceStatus.PAID:
            if invoice.settlement_ref != settlement_ref:
                logger.warning(
                    f"Invoice {invoice_id} already paid by {invoice.settlement_ref}; "
                    f"ignoring settlement {settlement_ref}"
                )
            return self._already_paid(invoice_id, settlement_ref, strategy)

        logger.warning(
            f"Settlement {settlement_ref} matched declined invoice {invoice_id} "
            f"({invoice.declined_reason or 'declined'}); not applied"
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.NO_MATCH,
            settlement_ref=settlement_ref,
            strategy=strategy,
            invoice_ids=[invoice_id],
        )

    def _flag_for_review(self, candidates: list[Invoice], settlement_ref: str) -> ReconcileResult:
        """Flag every still-pending candidate for manual review; none is settled."""

        def attach(current: Invoice) -> Invoice:
            refs = current.review_settlement_refs
            if settlement_ref not in refs:
                refs = [*refs, settlement_ref]
            return current.model_copy(update={"needs_review": True, "review_settlement_refs": refs})

        flagged: list[str] = []
        for candidate in candidates:
            if self.store.update_if_pending(candidate.id, attach) is not None:
                flagged.append(candidate.id)

        logger.warning(
            f"Ambiguous settlement {settlement_ref}: {len(flagged)} invoices flagged for review "
            f"({', '.join(flagged)})"
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.AMBIGUOUS_FLAGGED_FOR_REVIEW,
            settlement_ref=settlement_ref,
            strategy=MatchStrategy.FALLBACK,
            invoice_ids=flagged,
        )

    def _record(self, result: ReconcileResult, channel: str) -> None:
        reconcile_outcomes_total.labels(channel=channel, outcome=result.outcome.value).inc()
