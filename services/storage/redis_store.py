"""Redis-backed invoice store.

Production-grade implementation with:
- Lazy client initialization
- Retry with exponential jitter on transient connection errors
- Record writes and pending-index upkeep in one Lua script (atomic per invoice)
- Redis failures surfaced as UpstreamUnavailableError

Key layout (all keys carry the configured prefix):
- ``invoice:<id>``: invoice record as JSON
- ``invoices:pending``: sorted set of stored-pending invoice ids scored by created_at
- ``invoices:pending:<destination>``: the same, for one merchant destination
- ``invoice-index:<index>:<key>``: secondary index entry holding an invoice id

Based on redis-py:
https://redis.readthedocs.io/en/stable/
"""

import logging
from typing import Any

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.invoices.models import Invoice, InvoiceStatus
from services.shared.config import Settings
from services.shared.errors import UpstreamUnavailableError
from services.storage.base import InvoiceStore

logger = logging.getLogger(__name__)

# KEYS: record, global pending set, destination pending set
# ARGV: mode ("put" or "cas"), expected record, new record, invoice id, created_at, pending flag
WRITE_INVOICE_LUA = """
if ARGV[1] == "cas" and redis.call("GET", KEYS[1]) ~= ARGV[2] then
  return 0
end
redis.call("SET", KEYS[1], ARGV[3])
if ARGV[6] == "1" then
  redis.call("ZADD", KEYS[2], ARGV[5], ARGV[4])
  redis.call("ZADD", KEYS[3], ARGV[5], ARGV[4])
else
  redis.call("ZREM", KEYS[2], ARGV[4])
  redis.call("ZREM", KEYS[3], ARGV[4])
end
return 1
"""


class RedisInvoiceStore(InvoiceStore):
    """Invoice store on a shared Redis instance.

    Safe for multiple process replicas: every write is a single Redis command
    or script.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize Redis store.

        Args:
            settings: Application settings with redis_url and redis_key_prefix
        """
        self.settings = settings
        self._prefix = settings.redis_key_prefix
        self._client: redis.Redis | None = None

    def _get_client(self) -> redis.Redis:
        """Get or create the Redis client (lazy initialization)."""
        if self._client is None:
            self._client = redis.Redis.from_url(self.settings.redis_url, decode_responses=True)
            logger.info(f"Redis invoice store initialized for {self.settings.redis_url}")
        return self._client

    def _invoice_key(self, invoice_id: str) -> str:
        return f"{self._prefix}invoice:{invoice_id}"

    def _pending_key(self, destination: str | None = None) -> str:
        if destination is None:
            return f"{self._prefix}invoices:pending"
        return f"{self._prefix}invoices:pending:{destination}"

    def _index_key(self, index: str, key: str) -> str:
        return f"{self._prefix}invoice-index:{index}:{key}"

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.1, max=1),
        reraise=True,
    )
    def _execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        """Run one Redis command, retrying transient connection failures."""
        return getattr(self._get_client(), command)(*args, **kwargs)

    def _call(self, command: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return self._execute(command, *args, **kwargs)
        except RedisError as e:
            logger.error(f"Redis {command} failed: {e}")
            raise UpstreamUnavailableError(f"Invoice store unavailable: {e}") from e

    def _write(self, mode: str, expected_raw: str, invoice: Invoice) -> bool:
        written = self._call(
            "eval",
            WRITE_INVOICE_LUA,
            3,
            self._invoice_key(invoice.id),
            self._pending_key(),
            self._pending_key(invoice.merchant_destination),
            mode,
            expected_raw,
            invoice.model_dump_json(),
            invoice.id,
            invoice.created_at,
            "1" if invoice.status == InvoiceStatus.PENDING else "0",
        )
        return bool(written)

    def get(self, invoice_id: str) -> Invoice | None:
        raw = self._call("get", self._invoice_key(invoice_id))
        if raw is None:
            return None
        return Invoice.model_validate_json(raw)

    def save(self, invoice: Invoice) -> None:
        self._write("put", "", invoice)

    def compare_and_set(self, expected: Invoice, updated: Invoice) -> bool:
        return self._write("cas", expected.model_dump_json(), updated)

    def index_put(self, index: str, key: str, invoice_id: str, exclusive: bool = False) -> bool:
        written = self._call("set", self._index_key(index, key), invoice_id, nx=exclusive)
        return bool(written)

    def index_get(self, index: str, key: str) -> str | None:
        return self._call("get", self._index_key(index, key))

    def scan_pending_by_destination(self, destination: str | None = None) -> list[Invoice]:
        invoice_ids = self._call("zrevrange", self._pending_key(destination), 0, -1)
        if not invoice_ids:
            return []
        raws = self._call("mget", [self._invoice_key(invoice_id) for invoice_id in invoice_ids])
        return [Invoice.model_validate_json(raw) for raw in raws if raw is not None]

    def ping(self) -> bool:
        try:
            return bool(self._execute("ping"))
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False
