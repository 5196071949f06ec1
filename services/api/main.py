"""FastAPI application for invoice payment reconciliation.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Invoice creation with Solana Pay payment request URIs
- Webhook, poll and verify ingestion channels
- Server-sent status streams for waiting clients
- Structured error responses
- Prometheus metrics for monitoring

Reference:
https://fastapi.tiangolo.com/
"""

import hmac
import logging
import time
import uuid
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from services.api import metrics
from services.ingestion.poll import PollHandler
from services.ingestion.stream import StatusStreamHandler
from services.ingestion.verify import VerifyHandler
from services.ingestion.views import StatusView
from services.ingestion.webhook import WebhookHandler
from services.invoices.lifecycle import InvoiceLifecycleManager
from services.invoices.models import (
    Invoice,
    ReconcileOutcome,
    ReconcileResult,
    format_display_amount,
    now_seconds,
    to_minor_units,
)
from services.invoices.payment_request import build_payment_request_uri
from services.ledger.solana_rpc import SolanaLedgerReader
from services.notifications.factory import create_status_notifier
from services.reconciliation.engine import ReconciliationEngine
from services.reconciliation.fallback_matcher import FallbackMatcher
from services.reconciliation.reference_matcher import ReferenceMatcher
from services.shared.config import get_settings
from services.shared.errors import (
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    ReconciliationServiceError,
)
from services.shared.log_config import configure_logging
from services.storage.factory import create_invoice_store

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Reconciliation Service",
    description="Invoice issuing and exactly-once payment reconciliation for Solana Pay",
    version=settings.service_version,
)

invoice_store = create_invoice_store(settings)
status_notifier = create_status_notifier(settings)
ledger_reader = SolanaLedgerReader(settings)
lifecycle = InvoiceLifecycleManager(invoice_store, settings, notifier=status_notifier)
engine = ReconciliationEngine(
    invoice_store,
    ReferenceMatcher(invoice_store),
    FallbackMatcher(invoice_store, settings),
    notifier=status_notifier,
)
webhook_handler = WebhookHandler(engine, settings)
poll_handler = PollHandler(lifecycle, engine, ledger_reader, settings)
verify_handler = VerifyHandler(invoice_store, engine, ledger_reader, settings)
stream_handler = StatusStreamHandler(lifecycle, status_notifier, settings)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route templates keep invoice ids out of label values
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


@app.exception_handler(ReconciliationServiceError)
async def service_error_handler(request: Request, exc: ReconciliationServiceError) -> JSONResponse:
    """Map service errors to their HTTP status with a JSON detail."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    store: bool
    webhook_secret_configured: bool


class CreateInvoiceRequest(BaseModel):
    """Invoice creation request.

    ``amount`` is in display units of the payment asset (e.g. 1.50 USDC).
    Omit it and set ``allow_custom_amount`` to let the payer choose.
    """

    merchant_destination: str = Field(min_length=1)
    amount: Decimal | None = Field(default=None, gt=0)
    allow_custom_amount: bool = False
    ttl_seconds: int | None = Field(default=None, gt=0)
    recipient: str | None = None
    label: str | None = None
    message: str | None = None


class InvoiceResponse(BaseModel):
    """Invoice with its display amount and payment request URI."""

    invoice: Invoice
    display_amount: str | None = None
    payment_request_url: str | None = None
    expired: bool = False


class InvoiceListResponse(BaseModel):
    """Pending invoices, newest first."""

    invoices: list[InvoiceResponse]
    count: int


class MarkPaidRequest(BaseModel):
    """Manual settlement request."""

    invoice_id: str = Field(min_length=1)
    payer: str | None = None


class FallbackMatchPreview(BaseModel):
    """What the fallback matcher would do with a reference-less transfer."""

    merchant_destination: str
    amount: int
    occurred_at: int
    matches: list[StatusView]
    match_count: int
    result: str


def _invoice_response(invoice: Invoice, expired: bool = False) -> InvoiceResponse:
    display_amount = None
    if invoice.expected_amount is not None:
        display_amount = format_display_amount(invoice.expected_amount, settings.asset_decimals)
    return InvoiceResponse(
        invoice=invoice,
        display_amount=display_amount,
        payment_request_url=build_payment_request_uri(
            invoice, settings.asset_mint, settings.asset_decimals
        ),
        expired=expired,
    )


def require_debug_secret(authorization: str | None = Header(default=None)) -> None:
    """Guard debug routes with the debug bearer secret.

    Raises:
        ConfigurationError: If no debug secret is configured
        HTTPException: 401 if the credential does not match
    """
    if not settings.debug_secret:
        raise ConfigurationError("Debug secret not configured")
    expected = f"Bearer {settings.debug_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for Kubernetes liveness checks.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check(response: Response) -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness checks.

    Ready when the invoice store answers and the webhook secret is set.

    Returns:
        Readiness status (503 when not ready)
    """
    store_ok = invoice_store.ping()
    secret_ok = bool(settings.webhook_secret)
    ready = store_ok and secret_ok
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=ready, store=store_ok, webhook_secret_configured=secret_ok)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post(
    "/api/v1/invoices",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Invoices"],
)
def create_invoice(request: CreateInvoiceRequest) -> InvoiceResponse:
    """Create an invoice and its payment request.

    Any invoice still pending for the same destination is declined: one
    point-of-sale terminal handles one payment request at a time.

    ## Usage Example

    ```bash
    curl -X POST "http://localhost:8000/api/v1/invoices" \\
      -H "Content-Type: application/json" \\
      -d '{"merchant_destination": "<token account>", "recipient": "<wallet>", "amount": "1.50"}'
    ```

    ## Error Handling

    - Returns 400 if no amount is given without `allow_custom_amount`
    - Returns 400 if the amount rounds to zero in the asset's smallest unit
    - Returns 409 if no unique matching key could be reserved
    """
    if request.amount is None and not request.allow_custom_amount:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="amount is required unless allow_custom_amount is set",
        )

    expected_amount = None
    if request.amount is not None:
        expected_amount = to_minor_units(request.amount, settings.asset_decimals)

    try:
        invoice = lifecycle.create_invoice(
            merchant_destination=request.merchant_destination,
            expected_amount=expected_amount,
            ttl_seconds=request.ttl_seconds,
            recipient=request.recipient,
            label=request.label,
            message=request.message,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    return _invoice_response(invoice)


@app.get("/api/v1/invoices", response_model=InvoiceListResponse, tags=["Invoices"])
def list_pending_invoices(
    merchant_destination: str | None = Query(None, description="Only invoices for this destination"),
) -> InvoiceListResponse:
    """List invoices that are still pending, newest first."""
    invoices = [_invoice_response(invoice) for invoice in lifecycle.list_pending(merchant_destination)]
    return InvoiceListResponse(invoices=invoices, count=len(invoices))


@app.get("/api/v1/invoices/{invoice_id}", response_model=InvoiceResponse, tags=["Invoices"])
def get_invoice(invoice_id: str) -> InvoiceResponse:
    """Get an invoice with lazy expiry applied."""
    stored = invoice_store.get(invoice_id)
    if stored is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    observed = lifecycle.expire_if_due(stored)
    return _invoice_response(observed, expired=observed.status != stored.status)


@app.get("/api/v1/invoices/{invoice_id}/status", response_model=StatusView, tags=["Invoices"])
def get_invoice_status(invoice_id: str) -> StatusView:
    """Stored status without a ledger query, with lazy expiry applied."""
    stored = invoice_store.get(invoice_id)
    if stored is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    observed = lifecycle.expire_if_due(stored)
    return StatusView.from_invoice(observed, expired=observed.status != stored.status)


@app.post("/api/v1/invoices/{invoice_id}/extend", response_model=InvoiceResponse, tags=["Invoices"])
def extend_invoice(invoice_id: str) -> InvoiceResponse:
    """Extend a pending invoice's validity window.

    Returns 409 for paid or declined invoices.
    """
    return _invoice_response(lifecycle.extend_invoice(invoice_id))


@app.get("/api/v1/invoices/{invoice_id}/stream", tags=["Invoices"])
def stream_invoice_status(invoice_id: str) -> StreamingResponse:
    """Stream status changes as server-sent events.

    Sends the current status immediately, then one event per change until the
    invoice is paid or declined. Idle streams carry keepalive comments.
    """
    events = stream_handler.open(invoice_id)
    if events is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/api/v1/invoices/{invoice_id}/poll", response_model=StatusView, tags=["Reconciliation"])
def poll_invoice(invoice_id: str) -> StatusView:
    """Check recent ledger transfers for this invoice within the poll budget.

    Reports `pending` when the budget runs out or the ledger is unreachable.
    """
    view = poll_handler.handle(invoice_id)
    if view is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return view


@app.post("/api/v1/invoices/{invoice_id}/verify", response_model=StatusView, tags=["Reconciliation"])
def verify_invoice(invoice_id: str) -> StatusView:
    """Look up the invoice's matching key on the ledger and settle on a hit.

    Reports the stored status when nothing is found.
    """
    view = verify_handler.handle(invoice_id)
    if view is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return view


@app.get("/api/v1/webhooks/ledger", tags=["Reconciliation"])
def webhook_info() -> dict[str, object]:
    """Endpoint check used when registering the webhook with the indexer."""
    return {"ok": True, "message": "Ledger webhook endpoint. POST transaction events here."}


@app.post("/api/v1/webhooks/ledger", tags=["Reconciliation"])
async def receive_webhook(request: Request) -> JSONResponse:
    """Receive indexer transaction events.

    ## Error Handling

    - Returns 500 if the webhook secret is not configured
    - Returns 401 if the bearer credential does not match
    - Returns 400 if the body is not a JSON object or array of objects
    - Returns 200 otherwise, with per-outcome counts, even if some events failed
    """
    body = await request.body()
    result = webhook_handler.handle(request.headers.get("authorization"), body)
    return JSONResponse(status_code=result.status_code, content=result.content)


@app.get(
    "/api/v1/debug/pending",
    response_model=list[StatusView],
    tags=["Debug"],
    dependencies=[Depends(require_debug_secret)],
)
def debug_pending(
    merchant_destination: str | None = Query(None, description="Only invoices for this destination"),
) -> list[StatusView]:
    """Pending invoices as status views."""
    return [StatusView.from_invoice(invoice) for invoice in lifecycle.list_pending(merchant_destination)]


@app.get(
    "/api/v1/debug/invoice-match",
    response_model=FallbackMatchPreview,
    tags=["Debug"],
    dependencies=[Depends(require_debug_secret)],
)
def debug_invoice_match(
    merchant_destination: str = Query(..., min_length=1),
    amount: Decimal = Query(..., gt=0, description="Transfer amount in display units"),
    occurred_at: int | None = Query(None, description="Transfer time (unix seconds, default now)"),
) -> FallbackMatchPreview:
    """Dry-run the fallback matcher for a transfer without a matching key.

    Nothing is written. ``result`` is ``no_match``, ``would_settle`` or
    ``would_flag_for_review``.
    """
    minor_amount = to_minor_units(amount, settings.asset_decimals)
    timestamp = occurred_at if occurred_at is not None else now_seconds()
    candidates = engine.fallback_matcher.match(merchant_destination, minor_amount, timestamp)
    if not candidates:
        result = "no_match"
    elif len(candidates) == 1:
        result = "would_settle"
    else:
        result = "would_flag_for_review"
    return FallbackMatchPreview(
        merchant_destination=merchant_destination,
        amount=minor_amount,
        occurred_at=timestamp,
        matches=[StatusView.from_invoice(invoice) for invoice in candidates],
        match_count=len(candidates),
        result=result,
    )


@app.post(
    "/api/v1/debug/mark-paid",
    response_model=ReconcileResult,
    tags=["Debug"],
    dependencies=[Depends(require_debug_secret)],
)
def debug_mark_paid(request: MarkPaidRequest) -> ReconcileResult:
    """Settle an invoice manually with a generated ``debug_`` settlement reference.

    Returns 404 for unknown invoices and 409 for declined ones.
    """
    settlement_ref = f"debug_{uuid.uuid4().hex}"
    result = engine.settle(request.invoice_id, settlement_ref, payer=request.payer)
    if result.outcome == ReconcileOutcome.NO_MATCH:
        raise InvalidStateError(f"Invoice {request.invoice_id} is declined and cannot be marked paid")
    logger.warning(f"Invoice {request.invoice_id} marked paid manually ({result.outcome.value})")
    return result
