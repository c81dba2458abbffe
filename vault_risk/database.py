import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import PyMongoError

from .config import Collections
from .error_handling import DatabaseError
from .models import (
    DepositRecord, EmergencyAlert, LoopExecution, ShareTransferRecord, StoredRecord, WithdrawalRecord
)

logger = structlog.get_logger()

R = TypeVar("R", bound=StoredRecord)

AUDIT_RECORD_TYPES = (DepositRecord, WithdrawalRecord, ShareTransferRecord, LoopExecution)


class DatabaseManager:
    def __init__(self, settings):
        self.settings = settings
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None

    async def connect(self):
        """Initialize database connection"""
        try:
            self.mongo_client = AsyncIOMotorClient(
                self.settings.MONGODB_URI,
                maxPoolSize=20,
                minPoolSize=1,
                maxIdleTimeMS=30000,
                serverSelectionTimeoutMS=5000,
                socketTimeoutMS=20000
            )
            self.database = self.mongo_client[self.settings.MONGO_DB_NAME]

            await self.mongo_client.admin.command('ping')
            logger.info("Connected to MongoDB", database=self.settings.MONGO_DB_NAME)

            await self._create_indexes()
        except Exception as e:
            logger.error("Failed to connect to database", error=str(e))
            raise

    async def disconnect(self):
        """Close database connection"""
        if self.mongo_client:
            self.mongo_client.close()
            self.mongo_client = None
            self.database = None
            logger.info("Disconnected from MongoDB")

    async def _create_indexes(self):
        """Create the MongoDB indexes used by replay and time-series queries"""
        audit_order = [("vault_address", ASCENDING), ("block_number", ASCENDING), ("log_index", ASCENDING)]
        series_order = [("vault_address", ASCENDING), ("timestamp", DESCENDING)]
        indexes = {
            Collections.USER_POSITIONS: [
                IndexModel([("vault_address", ASCENDING), ("is_active", ASCENDING)]),
            ],
            Collections.DEPOSITS: [IndexModel(audit_order), IndexModel([("user_address", ASCENDING)])],
            Collections.WITHDRAWALS: [IndexModel(audit_order), IndexModel([("user_address", ASCENDING)])],
            Collections.SHARE_TRANSFERS: [IndexModel(audit_order)],
            Collections.LOOP_EXECUTIONS: [
                IndexModel(audit_order),
                IndexModel([("execution_type", ASCENDING)]),
            ],
            Collections.RISK_METRICS: [IndexModel(series_order), IndexModel([("alert_level", ASCENDING)])],
            Collections.ALERTS: [
                IndexModel(series_order),
                IndexModel([("vault_address", ASCENDING), ("is_resolved", ASCENDING)]),
                IndexModel([("alert_type", ASCENDING), ("severity", ASCENDING)]),
            ],
            Collections.L1_EQUITY: [IndexModel([("vault_address", ASCENDING), ("block_number", DESCENDING)])],
            Collections.L1_SPOT_BALANCES: [
                IndexModel([("vault_address", ASCENDING), ("token_id", ASCENDING), ("block_number", DESCENDING)]),
            ],
            Collections.TOKEN_PRICES: [IndexModel([("symbol", ASCENDING), ("timestamp", DESCENDING)])],
            Collections.RAW_EVENTS: [
                IndexModel([("contract_address", ASCENDING), ("block_number", ASCENDING), ("log_index", ASCENDING)]),
                IndexModel([("routed", ASCENDING)]),
            ],
        }
        try:
            for collection, models in indexes.items():
                await self.database[collection].create_indexes(models)
            logger.info("Database indexes created successfully")
        except Exception as e:
            logger.error("Failed to create indexes", error=str(e))
            raise

    async def health_check(self) -> dict:
        """Check database health status"""
        health = {"status": "disconnected", "latency_ms": None}
        try:
            if self.mongo_client:
                start_time = time.time()
                await self.mongo_client.admin.command('ping')
                health = {"status": "connected", "latency_ms": round((time.time() - start_time) * 1000, 2)}
        except Exception as e:
            health["error"] = str(e)
        return health


class Repository:
    """Idempotent writes keyed by natural identity. No cross-document transactions."""

    def __init__(self, database: AsyncIOMotorDatabase):
        self.database = database

    async def upsert(self, record: StoredRecord):
        try:
            await self.database[record.collection].replace_one(
                {"_id": record.id}, record.to_document(), upsert=True
            )
        except PyMongoError as e:
            raise DatabaseError(f"upsert {record.collection}/{record.id} failed: {e}") from e

    async def insert_once(self, record: StoredRecord):
        """Write an immutable record; an existing document with the same key is left untouched."""
        document = record.to_document()
        record_id = document.pop("_id")
        try:
            await self.database[record.collection].update_one(
                {"_id": record_id}, {"$setOnInsert": document}, upsert=True
            )
        except PyMongoError as e:
            raise DatabaseError(f"insert {record.collection}/{record.id} failed: {e}") from e

    async def persist(self, upserts: Iterable[StoredRecord] = (), inserts: Iterable[StoredRecord] = ()):
        for record in inserts:
            await self.insert_once(record)
        for record in upserts:
            await self.upsert(record)

    async def find_by_id(self, model: Type[R], record_id: str) -> Optional[R]:
        try:
            document = await self.database[model.collection].find_one({"_id": record_id})
        except PyMongoError as e:
            raise DatabaseError(f"find {model.collection}/{record_id} failed: {e}") from e
        return model.from_document(document) if document else None

    async def find_many(
        self,
        model: Type[R],
        query: Optional[Dict[str, Any]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 0,
    ) -> List[R]:
        try:
            cursor = self.database[model.collection].find(query or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return [model.from_document(document) async for document in cursor]
        except PyMongoError as e:
            raise DatabaseError(f"query {model.collection} failed: {e}") from e

    async def mark_resolved(self, alert: EmergencyAlert):
        """Resolution is the only mutation an alert record ever receives."""
        try:
            await self.database[EmergencyAlert.collection].update_one(
                {"_id": alert.id, "is_resolved": False},
                {"$set": {"is_resolved": True, "resolved_at": alert.resolved_at}},
            )
        except PyMongoError as e:
            raise DatabaseError(f"resolve alert {alert.id} failed: {e}") from e

    async def load_audit_trail(self, vault_address: Optional[str] = None) -> List[StoredRecord]:
        query = {"vault_address": vault_address.lower()} if vault_address else {}
        order = [("block_number", ASCENDING), ("log_index", ASCENDING)]
        records: List[StoredRecord] = []
        for model in AUDIT_RECORD_TYPES:
            records.extend(await self.find_many(model, query, order))
        return records

    async def load_unresolved_alerts(self) -> List[EmergencyAlert]:
        return await self.find_many(EmergencyAlert, {"is_resolved": False}, [("timestamp", ASCENDING)])


class NullRepository:
    """Stand-in when no database is configured: accepts writes, stores nothing."""

    async def upsert(self, record: StoredRecord):
        return None

    async def insert_once(self, record: StoredRecord):
        return None

    async def persist(self, upserts: Iterable[StoredRecord] = (), inserts: Iterable[StoredRecord] = ()):
        return None

    async def find_by_id(self, model, record_id: str):
        return None

    async def find_many(self, model, query=None, sort=None, limit: int = 0) -> list:
        return []

    async def mark_resolved(self, alert: EmergencyAlert):
        return None

    async def load_audit_trail(self, vault_address: Optional[str] = None) -> list:
        return []

    async def load_unresolved_alerts(self) -> list:
        return []
