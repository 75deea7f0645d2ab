"""
Trade Document Hub - Trade Workflow Service

Single entry point for every processed trade document:

1. Correlate the document with one of the user's open transactions
2. On a match, attach it and let the workflow engine decide whether the
   transaction advances
3. Otherwise open a new transaction seeded from the document
4. Recompute next-action suggestions whenever the step changes

The correlate -> create/attach section runs under a per-user lock, so two
documents of the same user processed concurrently cannot both open a new
transaction for the same deal.
"""

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .entity_extractor import EntityExtractor, FieldEntityExtractor
from .suggestion_engine import suggest
from .transaction_correlator import TransactionCorrelator
from .transaction_models import (
    BusinessTransaction, DocumentEntities, DocumentRole, DocumentStatus,
    ProcessedDocument, TransactionDocument, TransactionStep
)
from .transaction_store import TransactionStore
from .workflow_config import DEFAULT_CURRENCY
from .workflow_engine import TransactionStatus, WorkflowEngine, WorkflowHistoryEntry, WorkflowStep
from .workflow_errors import (
    CorrelationInputError, DocumentNotFoundError, TransactionNotFoundError,
    TransitionRejectedError
)

logger = logging.getLogger(__name__)

MANUAL_OVERRIDE_TRIGGER = "manual_override"


class TradeWorkflowService:
    """
    Orchestrates correlation, the workflow state machine and suggestions.

    Usage:
        service = TradeWorkflowService(store)
        transaction = await service.process_document_workflow(document)
    """

    def __init__(
        self,
        store: TransactionStore,
        entity_extractor: Optional[EntityExtractor] = None,
        correlator: Optional[TransactionCorrelator] = None,
        default_currency: Optional[str] = DEFAULT_CURRENCY
    ):
        self.store = store
        self.entity_extractor = entity_extractor or FieldEntityExtractor()
        self.correlator = correlator or TransactionCorrelator(store)
        self.default_currency = default_currency
        # A user's lock lives only while some coroutine holds or awaits it
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def process_document_workflow(self, document: ProcessedDocument) -> BusinessTransaction:
        """
        Bind a processed document to a transaction, advancing the workflow
        when the document completes a step.

        Raises:
            CorrelationInputError: document lacks ids or is not processed
            TransactionNotFoundError: document points at a missing transaction
            DocumentNotFoundError: document is not in the store
            WorkflowPersistenceError: store failure or write conflict
        """
        self.correlator.validate_document(document)
        if document.status != DocumentStatus.PROCESSED.value:
            raise CorrelationInputError(
                f"Document '{document.id}' is '{document.status}', only processed documents "
                "can join a transaction",
                {"document_id": document.id, "status": document.status},
            )

        if document.transaction_id:
            # Bound on an earlier submission; never re-correlated
            return await self._existing_transaction(document)

        lock = self._lock_for(document.user_id)
        async with lock:
            # The caller's copy may be stale; the stored binding decides
            stored = await self.store.get_document(document.id)
            if stored is None:
                raise DocumentNotFoundError(document.id)
            if stored.transaction_id:
                document.transaction_id = stored.transaction_id
                return await self._existing_transaction(document)

            transaction = await self.correlator.find_related_transaction(document)
            if transaction is not None:
                return await self.attach_document(transaction, document)
            return await self.create_transaction(document)

    async def process_stored_document(self, document_id: str) -> BusinessTransaction:
        """Load a document from the store and run it through the workflow."""
        document = await self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return await self.process_document_workflow(document)

    # =========================================================================
    # LIFECYCLE OPERATIONS
    # =========================================================================

    async def create_transaction(self, document: ProcessedDocument) -> BusinessTransaction:
        """Open a new transaction seeded from its first document."""
        transaction_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        entities = await self._extract_entities(document)
        step = WorkflowEngine.initial_step_for(document.document_type)
        entry = TransactionDocument.from_document(document, DocumentRole.SOURCE)

        history = WorkflowHistoryEntry(
            from_step=None,
            to_step=step.step_id,
            trigger=entry.document_type,
            reason=f"Transaction opened by {entry.document_type}",
            document_id=document.id,
        )

        transaction = BusinessTransaction(
            id=transaction_id,
            user_id=document.user_id,
            status=WorkflowEngine.status_for_step(step.step_id),
            current_step=TransactionStep.from_step(step),
            entities=entities,
            documents=[entry],
            currency=self.default_currency,
            next_suggested_actions=suggest(step.step_id, [entry.document_type]),
            workflow_history=[history.to_dict()],
            created_date=now,
            updated_date=now,
        )

        await self.store.insert_transaction(transaction)
        await self.store.bind_document(document.id, transaction_id, entities=entities.model_dump())
        document.transaction_id = transaction_id

        logger.info(
            "Created transaction %s for document %s (%s) at step %s",
            transaction_id, document.id, entry.document_type, step.step_id
        )
        return transaction

    async def attach_document(
        self,
        transaction: BusinessTransaction,
        document: ProcessedDocument
    ) -> BusinessTransaction:
        """Append a document to a transaction and apply any resulting transition."""
        entry = TransactionDocument.from_document(document, DocumentRole.RECEIVED)

        fields: Dict[str, Any] = {"updated_date": datetime.now(timezone.utc)}
        merged_entities = transaction.entities.merged_with(document.entities)
        if merged_entities != transaction.entities:
            fields["entities"] = merged_entities.model_dump()

        updated = await self.store.append_transaction_document(transaction.id, entry, fields)
        await self.store.bind_document(document.id, transaction.id)
        document.transaction_id = transaction.id

        logger.info(
            "Attached document %s (%s) to transaction %s",
            document.id, entry.document_type, transaction.id
        )

        decision = WorkflowEngine.evaluate_transition(
            updated.current_step.step_id,
            updated.document_types,
            entry.document_type,
        )
        if not decision.advanced:
            logger.debug("Transaction %s stays at %s: %s", transaction.id,
                         decision.current_step_id, decision.reason)
            return updated

        return await self._move_to_step(
            updated,
            WorkflowEngine.get_step(decision.next_step_id),
            trigger=entry.document_type,
            reason=decision.reason,
            document_id=document.id,
        )

    async def update_transaction_status(
        self,
        transaction_id: str,
        user_id: str,
        status: str,
        notes: Optional[str] = None,
        actor: str = "user"
    ) -> Optional[BusinessTransaction]:
        """
        Manually move a transaction to the first step mapped to `status`.

        Returns:
            The updated transaction, or None when the transaction does not
            exist for this user or no step maps to the status (nothing is written)
        """
        lock = self._lock_for(user_id)
        async with lock:
            transaction = await self.store.get_transaction(transaction_id, user_id)
            if transaction is None:
                logger.info("Status update for unknown transaction %s (user %s)",
                            transaction_id, user_id)
                return None

            try:
                step = WorkflowEngine.step_for_status(status)
            except TransitionRejectedError as e:
                logger.warning("Status update rejected for transaction %s: %s",
                               transaction_id, e.message)
                return None

            return await self._move_to_step(
                transaction,
                step,
                trigger=MANUAL_OVERRIDE_TRIGGER,
                reason=notes or f"Status manually set to {status}",
                actor=actor,
            )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_transaction(self, transaction_id: str, user_id: str) -> Optional[BusinessTransaction]:
        return await self.store.get_transaction(transaction_id, user_id)

    async def get_transaction_documents(self, transaction_id: str) -> List[ProcessedDocument]:
        """Documents bound to the transaction, oldest upload first."""
        return await self.store.find_documents_by_transaction(transaction_id)

    async def list_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None
    ) -> List[BusinessTransaction]:
        return await self.store.list_user_transactions(
            user_id, status, limit, offset, search=search
        )

    async def get_transaction_stats(self, user_id: str) -> Dict[str, Any]:
        """
        Transaction counts for a user, with every status present, plus the
        completed/active split and the summed transaction value.
        """
        counts = await self.store.count_transactions_by_status(user_id)
        by_status = {status: counts.get(status, 0) for status in WorkflowEngine.get_all_statuses()}
        total = sum(by_status.values())
        completed = by_status[TransactionStatus.COMPLETED.value]
        return {
            "total": total,
            "completed": completed,
            "active": total - completed,
            "total_value": await self.store.total_transaction_value(user_id),
            "by_status": by_status,
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _existing_transaction(self, document: ProcessedDocument) -> BusinessTransaction:
        existing = await self.store.get_transaction(document.transaction_id, document.user_id)
        if existing is None:
            raise TransactionNotFoundError(document.transaction_id)
        logger.info(
            "Document %s already belongs to transaction %s",
            document.id, document.transaction_id
        )
        return existing

    async def _extract_entities(self, document: ProcessedDocument) -> DocumentEntities:
        try:
            return await self.entity_extractor.extract_entities(document)
        except Exception as e:
            # Ingestion continues with known-empty entities
            logger.warning("Entity extraction failed for document %s: %s", document.id, e)
            return DocumentEntities.empty()

    async def _move_to_step(
        self,
        transaction: BusinessTransaction,
        step: WorkflowStep,
        trigger: str,
        reason: str,
        actor: str = "system",
        document_id: Optional[str] = None
    ) -> BusinessTransaction:
        """Set step, status and suggestions in a single write."""
        suggestions = suggest(step.step_id, transaction.document_types)
        history = WorkflowHistoryEntry(
            from_step=transaction.current_step.step_id,
            to_step=step.step_id,
            trigger=trigger,
            actor=actor,
            reason=reason,
            document_id=document_id,
        )
        fields = {
            "status": WorkflowEngine.status_for_step(step.step_id),
            "current_step": TransactionStep.from_step(step).model_dump(),
            "next_suggested_actions": [s.model_dump() for s in suggestions],
            "updated_date": history.timestamp,
        }

        updated = await self.store.update_transaction(transaction.id, fields, history.to_dict())

        logger.info(
            "Workflow transition: transaction=%s, %s -> %s (trigger=%s, actor=%s)",
            transaction.id, transaction.current_step.step_id, step.step_id, trigger, actor
        )
        return updated
