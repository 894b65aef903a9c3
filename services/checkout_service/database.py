"""
Persistence gateway for completed checkouts.

Two append-only collections: `orders` (one row per checkout session) and
`digital_access` (one download grant per digital item per order). Nothing
here updates or deletes.
"""
import logging
from typing import Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.utils import settings, StorageUnavailable, StorageWriteError

from services.checkout_service.models import OrderDB, DigitalAccessDB

logger = logging.getLogger("checkout-service")

NOT_CONFIGURED_MESSAGE = (
    "Database not configured. Please set MONGO_URL (or MONGODB_URI / DATABASE_URL) environment variable."
)

# --- Database ---
def get_db_client(url: str) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

def _serialize(doc: dict) -> dict:
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


class OrderStore:
    def __init__(self, url: Optional[str], db_name: str):
        self.url = url
        self.db_name = db_name
        self._client: Optional[AsyncIOMotorClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.url)

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if not self.url:
            raise StorageUnavailable(NOT_CONFIGURED_MESSAGE)
        if self._client is None:
            self._client = get_db_client(self.url)
            logger.info("Backing store client initialized")
        return self._client[self.db_name]

    async def ensure_indexes(self):
        await self.db.orders.create_index("session_id", unique=True)
        await self.db.digital_access.create_index("download_token", unique=True)
        await self.db.digital_access.create_index("order_id")

    async def ping(self):
        try:
            await self.db.orders.find_one({}, {"_id": 1})
        except PyMongoError as e:
            raise StorageWriteError(f"Database unreachable: {e}") from e

    async def find_order(self, session_id: str) -> Optional[dict]:
        try:
            doc = await self.db.orders.find_one({"session_id": session_id})
        except PyMongoError as e:
            raise StorageWriteError(f"Order lookup failed: {e}") from e
        return _serialize(doc) if doc else None

    async def save_order(self, order: OrderDB) -> Tuple[dict, bool]:
        """
        Insert one order row. Returns (row, created).

        A row that already exists for the session id is returned untouched
        with created=False, so redelivered webhooks record the order once.
        """
        existing = await self.find_order(order.session_id)
        if existing:
            logger.info("Order already recorded", extra={"session_id": order.session_id, "order_id": existing["id"]})
            return existing, False

        doc = order.to_document()
        try:
            result = await self.db.orders.insert_one(doc)
        except DuplicateKeyError:
            # Lost a race with a concurrent delivery of the same event
            existing = await self.find_order(order.session_id)
            if existing is None:
                raise StorageWriteError("Order insert rejected as duplicate but no row found")
            return existing, False
        except PyMongoError as e:
            raise StorageWriteError(f"Order insert failed: {e}") from e

        doc["_id"] = result.inserted_id
        saved = _serialize(doc)
        logger.info("Order saved", extra={"session_id": order.session_id, "order_id": saved["id"]})
        return saved, True

    async def create_digital_access(self, grant: DigitalAccessDB) -> dict:
        doc = grant.to_document()
        try:
            result = await self.db.digital_access.insert_one(doc)
        except PyMongoError as e:
            raise StorageWriteError(f"Digital access insert failed: {e}") from e
        doc["_id"] = result.inserted_id
        return _serialize(doc)

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None


_store: Optional[OrderStore] = None

def get_order_store() -> OrderStore:
    """Lazily built, process-wide store handle."""
    global _store
    if _store is None or _store.url != settings.MONGO_URL:
        _store = OrderStore(settings.MONGO_URL, settings.MONGO_DB_NAME)
    return _store
