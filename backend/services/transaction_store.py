"""
Trade Document Hub - Transaction Store

This module defines the persistence abstraction used by the transaction
workflow and provides two implementations:

- InMemoryTransactionStore: dict-backed store for tests and local runs
- MongoTransactionStore: motor (async MongoDB) store used by the server

Both store plain dicts produced by `model_dump()` and hand back fresh model
instances, so callers never share mutable state with the store.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .transaction_models import (
    ENTITY_ROLES, BusinessTransaction, ProcessedDocument, TransactionDocument
)
from .workflow_engine import TransactionStatus
from .workflow_errors import (
    DocumentNotFoundError, TransactionNotFoundError, WorkflowPersistenceError
)

logger = logging.getLogger(__name__)

COMPLETED_STATUS = TransactionStatus.COMPLETED.value

# Stored-document paths a free-text transaction search looks at
SEARCH_FIELDS = ["id"] + [f"entities.{role}.name" for role in ENTITY_ROLES]


def _searchable_values(stored: Dict[str, Any]) -> List[str]:
    values = [stored["id"]]
    entities = stored.get("entities") or {}
    for role in ENTITY_ROLES:
        entity = entities.get(role) or {}
        if entity.get("name"):
            values.append(entity["name"])
    return values


class TransactionStore(ABC):
    """
    Abstract store for processed documents and business transactions.

    Implementations raise WorkflowPersistenceError for backend failures and
    write conflicts.
    """

    # ----------------------------------------------------------------- documents

    @abstractmethod
    async def insert_document(self, document: ProcessedDocument) -> None:
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[ProcessedDocument]:
        pass

    @abstractmethod
    async def find_documents_by_transaction(self, transaction_id: str) -> List[ProcessedDocument]:
        """Documents bound to a transaction, oldest upload first."""
        pass

    @abstractmethod
    async def bind_document(
        self,
        document_id: str,
        transaction_id: str,
        entities: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Set a document's transaction id. The id can be written once; binding
        to the same transaction again is a no-op, binding elsewhere conflicts.

        Raises:
            DocumentNotFoundError: unknown document
            WorkflowPersistenceError: already bound to another transaction
        """
        pass

    # -------------------------------------------------------------- transactions

    @abstractmethod
    async def insert_transaction(self, transaction: BusinessTransaction) -> None:
        pass

    @abstractmethod
    async def get_transaction(
        self,
        transaction_id: str,
        user_id: Optional[str] = None
    ) -> Optional[BusinessTransaction]:
        pass

    @abstractmethod
    async def find_open_transactions(
        self,
        user_id: str,
        created_after: datetime
    ) -> List[BusinessTransaction]:
        """Non-completed transactions of a user created at/after the cutoff, newest first."""
        pass

    @abstractmethod
    async def append_transaction_document(
        self,
        transaction_id: str,
        entry: TransactionDocument,
        fields: Optional[Dict[str, Any]] = None
    ) -> BusinessTransaction:
        """Append a document reference (and set `fields`) in one write."""
        pass

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        history_entry: Optional[Dict[str, Any]] = None
    ) -> BusinessTransaction:
        """Set top-level fields (and append a history entry) in one write."""
        pass

    @abstractmethod
    async def list_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None
    ) -> List[BusinessTransaction]:
        """
        Most recently updated first. `search` is a case-insensitive substring
        matched against the transaction id and the entity names.
        """
        pass

    @abstractmethod
    async def count_transactions_by_status(self, user_id: str) -> Dict[str, int]:
        pass

    @abstractmethod
    async def total_transaction_value(self, user_id: str) -> float:
        """Sum of `total_amount` over the user's transactions (unset amounts count as 0)."""
        pass


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryTransactionStore(TransactionStore):
    """
    In-memory store for testing.

    Mirrors the MongoDB store's query semantics over dicts.
    """

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._transactions: Dict[str, Dict[str, Any]] = {}

    async def insert_document(self, document: ProcessedDocument) -> None:
        if document.id in self._documents:
            raise WorkflowPersistenceError(
                f"Document '{document.id}' already exists",
                {"document_id": document.id},
                conflict=True,
            )
        self._documents[document.id] = document.model_dump()

    async def get_document(self, document_id: str) -> Optional[ProcessedDocument]:
        stored = self._documents.get(document_id)
        if stored is None:
            return None
        return ProcessedDocument.model_validate(copy.deepcopy(stored))

    async def find_documents_by_transaction(self, transaction_id: str) -> List[ProcessedDocument]:
        matches = [
            d for d in self._documents.values()
            if d.get("transaction_id") == transaction_id
        ]
        matches.sort(key=lambda d: d["upload_date"])
        return [ProcessedDocument.model_validate(copy.deepcopy(d)) for d in matches]

    async def bind_document(
        self,
        document_id: str,
        transaction_id: str,
        entities: Optional[Dict[str, Any]] = None
    ) -> None:
        stored = self._documents.get(document_id)
        if stored is None:
            raise DocumentNotFoundError(document_id)

        current = stored.get("transaction_id")
        if current is not None and current != transaction_id:
            raise WorkflowPersistenceError(
                f"Document '{document_id}' already belongs to transaction '{current}'",
                {"document_id": document_id, "transaction_id": current},
                conflict=True,
            )

        stored["transaction_id"] = transaction_id
        if entities is not None and stored.get("entities") is None:
            stored["entities"] = copy.deepcopy(entities)

    async def insert_transaction(self, transaction: BusinessTransaction) -> None:
        if transaction.id in self._transactions:
            raise WorkflowPersistenceError(
                f"Transaction '{transaction.id}' already exists",
                {"transaction_id": transaction.id},
                conflict=True,
            )
        self._transactions[transaction.id] = transaction.to_document()

    async def get_transaction(
        self,
        transaction_id: str,
        user_id: Optional[str] = None
    ) -> Optional[BusinessTransaction]:
        stored = self._transactions.get(transaction_id)
        if stored is None or (user_id is not None and stored["user_id"] != user_id):
            return None
        return BusinessTransaction.model_validate(copy.deepcopy(stored))

    async def find_open_transactions(
        self,
        user_id: str,
        created_after: datetime
    ) -> List[BusinessTransaction]:
        matches = [
            t for t in self._transactions.values()
            if t["user_id"] == user_id
            and t["status"] != COMPLETED_STATUS
            and t["created_date"] >= created_after
        ]
        matches.sort(key=lambda t: t["created_date"], reverse=True)
        return [BusinessTransaction.model_validate(copy.deepcopy(t)) for t in matches]

    async def append_transaction_document(
        self,
        transaction_id: str,
        entry: TransactionDocument,
        fields: Optional[Dict[str, Any]] = None
    ) -> BusinessTransaction:
        stored = self._require_transaction(transaction_id)
        candidate = copy.deepcopy(stored)
        candidate["documents"].append(entry.model_dump())
        candidate.update(copy.deepcopy(fields or {}))
        updated = BusinessTransaction.model_validate(copy.deepcopy(candidate))
        self._transactions[transaction_id] = candidate
        return updated

    async def update_transaction(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        history_entry: Optional[Dict[str, Any]] = None
    ) -> BusinessTransaction:
        stored = self._require_transaction(transaction_id)
        candidate = copy.deepcopy(stored)
        candidate.update(copy.deepcopy(fields))
        if history_entry is not None:
            candidate.setdefault("workflow_history", []).append(copy.deepcopy(history_entry))
        # Validate before committing so a bad write leaves the record untouched
        updated = BusinessTransaction.model_validate(copy.deepcopy(candidate))
        self._transactions[transaction_id] = candidate
        return updated

    async def list_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None
    ) -> List[BusinessTransaction]:
        needle = search.lower() if search else None
        matches = [
            t for t in self._transactions.values()
            if t["user_id"] == user_id
            and (status is None or t["status"] == status)
            and (needle is None or any(needle in value.lower() for value in _searchable_values(t)))
        ]
        matches.sort(key=lambda t: (t["updated_date"], t["created_date"]), reverse=True)
        page = matches[offset:offset + limit]
        return [BusinessTransaction.model_validate(copy.deepcopy(t)) for t in page]

    async def count_transactions_by_status(self, user_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for t in self._transactions.values():
            if t["user_id"] == user_id:
                counts[t["status"]] = counts.get(t["status"], 0) + 1
        return counts

    async def total_transaction_value(self, user_id: str) -> float:
        return float(sum(
            t.get("total_amount") or 0
            for t in self._transactions.values()
            if t["user_id"] == user_id
        ))

    def _require_transaction(self, transaction_id: str) -> Dict[str, Any]:
        stored = self._transactions.get(transaction_id)
        if stored is None:
            raise TransactionNotFoundError(transaction_id)
        return stored


# =============================================================================
# MONGODB STORE
# =============================================================================

class MongoTransactionStore(TransactionStore):
    """
    motor-backed store.

    Usage:
        client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
        db = client[DB_NAME]
        store = MongoTransactionStore(db.business_transactions, db.processed_documents)
        await store.create_indexes()
    """

    def __init__(self, transactions_collection, documents_collection):
        self.transactions = transactions_collection
        self.documents = documents_collection

    async def create_indexes(self) -> None:
        try:
            await self.transactions.create_index("id", unique=True)
            await self.transactions.create_index([("user_id", 1), ("created_date", -1)])
            await self.transactions.create_index([("user_id", 1), ("status", 1)])
            await self.transactions.create_index("status")
            await self.documents.create_index("id", unique=True)
            await self.documents.create_index("transaction_id")
            await self.documents.create_index("user_id")
        except PyMongoError as e:
            raise self._persistence_error("create_indexes", e)
        logger.info("Transaction store indexes created")

    # ----------------------------------------------------------------- documents

    async def insert_document(self, document: ProcessedDocument) -> None:
        try:
            await self.documents.insert_one(document.model_dump())
        except PyMongoError as e:
            raise self._persistence_error("insert_document", e, document_id=document.id)

    async def get_document(self, document_id: str) -> Optional[ProcessedDocument]:
        try:
            stored = await self.documents.find_one({"id": document_id}, {"_id": 0})
        except PyMongoError as e:
            raise self._persistence_error("get_document", e, document_id=document_id)
        return ProcessedDocument.model_validate(stored) if stored else None

    async def find_documents_by_transaction(self, transaction_id: str) -> List[ProcessedDocument]:
        try:
            stored = await self.documents.find(
                {"transaction_id": transaction_id}, {"_id": 0}
            ).sort("upload_date", 1).to_list(None)
        except PyMongoError as e:
            raise self._persistence_error(
                "find_documents_by_transaction", e, transaction_id=transaction_id
            )
        return [ProcessedDocument.model_validate(d) for d in stored]

    async def bind_document(
        self,
        document_id: str,
        transaction_id: str,
        entities: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            result = await self.documents.update_one(
                {"id": document_id, "transaction_id": None},
                {"$set": {"transaction_id": transaction_id}},
            )
            if result.matched_count == 1:
                if entities is not None:
                    await self.documents.update_one(
                        {"id": document_id, "entities": None},
                        {"$set": {"entities": entities}},
                    )
                return

            existing = await self.documents.find_one(
                {"id": document_id}, {"_id": 0, "transaction_id": 1}
            )
        except PyMongoError as e:
            raise self._persistence_error("bind_document", e, document_id=document_id)

        if existing is None:
            raise DocumentNotFoundError(document_id)
        if existing.get("transaction_id") != transaction_id:
            raise WorkflowPersistenceError(
                f"Document '{document_id}' already belongs to transaction "
                f"'{existing.get('transaction_id')}'",
                {"document_id": document_id, "transaction_id": existing.get("transaction_id")},
                conflict=True,
            )

    # -------------------------------------------------------------- transactions

    async def insert_transaction(self, transaction: BusinessTransaction) -> None:
        try:
            await self.transactions.insert_one(transaction.to_document())
        except PyMongoError as e:
            raise self._persistence_error("insert_transaction", e, transaction_id=transaction.id)

    async def get_transaction(
        self,
        transaction_id: str,
        user_id: Optional[str] = None
    ) -> Optional[BusinessTransaction]:
        query = {"id": transaction_id}
        if user_id is not None:
            query["user_id"] = user_id
        try:
            stored = await self.transactions.find_one(query, {"_id": 0})
        except PyMongoError as e:
            raise self._persistence_error("get_transaction", e, transaction_id=transaction_id)
        return BusinessTransaction.model_validate(stored) if stored else None

    async def find_open_transactions(
        self,
        user_id: str,
        created_after: datetime
    ) -> List[BusinessTransaction]:
        query = {
            "user_id": user_id,
            "status": {"$ne": COMPLETED_STATUS},
            "created_date": {"$gte": created_after},
        }
        try:
            stored = await self.transactions.find(query, {"_id": 0}).sort(
                "created_date", -1
            ).to_list(None)
        except PyMongoError as e:
            raise self._persistence_error("find_open_transactions", e, user_id=user_id)
        return [BusinessTransaction.model_validate(t) for t in stored]

    async def append_transaction_document(
        self,
        transaction_id: str,
        entry: TransactionDocument,
        fields: Optional[Dict[str, Any]] = None
    ) -> BusinessTransaction:
        update: Dict[str, Any] = {"$push": {"documents": entry.model_dump()}}
        if fields:
            update["$set"] = fields
        return await self._find_one_and_update(transaction_id, update, "append_transaction_document")

    async def update_transaction(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        history_entry: Optional[Dict[str, Any]] = None
    ) -> BusinessTransaction:
        update: Dict[str, Any] = {"$set": fields}
        if history_entry is not None:
            update["$push"] = {"workflow_history": history_entry}
        return await self._find_one_and_update(transaction_id, update, "update_transaction")

    async def list_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None
    ) -> List[BusinessTransaction]:
        query: Dict[str, Any] = {"user_id": user_id}
        if status:
            query["status"] = status
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{field: pattern} for field in SEARCH_FIELDS]
        try:
            stored = await self.transactions.find(query, {"_id": 0}).sort(
                [("updated_date", -1), ("created_date", -1)]
            ).skip(offset).limit(limit).to_list(limit)
        except PyMongoError as e:
            raise self._persistence_error("list_user_transactions", e, user_id=user_id)
        return [BusinessTransaction.model_validate(t) for t in stored]

    async def count_transactions_by_status(self, user_id: str) -> Dict[str, int]:
        pipeline = [
            {"$match": {"user_id": user_id}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        try:
            results = await self.transactions.aggregate(pipeline).to_list(None)
        except PyMongoError as e:
            raise self._persistence_error("count_transactions_by_status", e, user_id=user_id)
        return {r["_id"]: r["count"] for r in results}

    async def total_transaction_value(self, user_id: str) -> float:
        pipeline = [
            {"$match": {"user_id": user_id}},
            {"$group": {"_id": None, "total_value": {"$sum": {"$ifNull": ["$total_amount", 0]}}}},
        ]
        try:
            results = await self.transactions.aggregate(pipeline).to_list(None)
        except PyMongoError as e:
            raise self._persistence_error("total_transaction_value", e, user_id=user_id)
        return float(results[0]["total_value"]) if results else 0.0

    async def _find_one_and_update(
        self,
        transaction_id: str,
        update: Dict[str, Any],
        operation: str
    ) -> BusinessTransaction:
        try:
            stored = await self.transactions.find_one_and_update(
                {"id": transaction_id},
                update,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise self._persistence_error(operation, e, transaction_id=transaction_id)
        if stored is None:
            raise TransactionNotFoundError(transaction_id)
        return BusinessTransaction.model_validate(stored)

    @staticmethod
    def _persistence_error(operation: str, error: PyMongoError, **details) -> WorkflowPersistenceError:
        logger.error("Store operation %s failed: %s (%s)", operation, error, details)
        return WorkflowPersistenceError(
            f"Store operation '{operation}' failed: {error}",
            {"operation": operation, **details},
            conflict=isinstance(error, DuplicateKeyError),
        )
