"""
Tests for the Trade Workflow Service.

Covers document processing end to end against the in-memory store:
correlation, transaction creation, workflow transitions, suggestions,
manual status overrides and per-user serialization.
"""
import asyncio
import copy
import pytest
from unittest.mock import AsyncMock, MagicMock

from services.trade_workflow_service import TradeWorkflowService
from services.transaction_models import CompanyEntity, DocumentEntities
from services.transaction_store import InMemoryTransactionStore
from services.workflow_errors import (
    CorrelationInputError, DocumentNotFoundError, TransactionNotFoundError,
    WorkflowPersistenceError
)


def actions(transaction):
    return [s.action for s in transaction.next_suggested_actions]


class TestCreateTransaction:
    """First document of a deal."""

    @pytest.mark.asyncio
    async def test_quotation_opens_transaction(self, store, submit, make_document):
        txn = await submit(make_document("q1", "quotation", supplier="Acme Ltd", buyer="Initech"))

        assert txn.status == "quotation_received"
        assert txn.current_step.step_id == "quotation_received"
        assert txn.user_id == "user-1"
        assert txn.currency == "USD"
        assert len(txn.documents) == 1
        assert txn.documents[0].document_id == "q1"
        assert txn.documents[0].role == "source"
        assert txn.entities.supplier.name == "Acme Ltd"
        assert txn.entities.trading_company.name == "Initech"
        assert actions(txn) == ["issue_purchase_order"]
        assert txn.workflow_history[0].from_step is None
        assert txn.workflow_history[0].to_step == "quotation_received"

        stored_doc = await store.get_document("q1")
        assert stored_doc.transaction_id == txn.id
        assert stored_doc.entities.supplier.name == "Acme Ltd"

    @pytest.mark.asyncio
    async def test_po_first_starts_at_po_issued(self, submit, make_document):
        txn = await submit(make_document("po1", "purchase_order", supplier="Acme"))
        assert txn.status == "po_issued"
        assert actions(txn) == ["make_payment"]

    @pytest.mark.asyncio
    async def test_proforma_first_reports_quotation_status(self, submit, make_document):
        txn = await submit(make_document("pi1", "proforma_invoice", supplier="Acme"))
        assert txn.current_step.step_id == "proforma_invoice_received"
        assert txn.status == "quotation_received"

    @pytest.mark.asyncio
    async def test_unmapped_type_starts_at_quotation(self, submit, make_document):
        txn = await submit(make_document("pl1", "packing_list", supplier="Acme"))
        assert txn.current_step.step_id == "quotation_received"

    @pytest.mark.asyncio
    async def test_default_currency_configurable(self, store, make_document):
        service = TradeWorkflowService(store, default_currency="EUR")
        doc = make_document("q1", "quotation", supplier="Acme")
        await store.insert_document(doc)
        txn = await service.process_document_workflow(doc)
        assert txn.currency == "EUR"

    @pytest.mark.asyncio
    async def test_failing_extractor_yields_empty_entities(self, store, make_document):
        """Extraction failures do not block ingestion."""
        extractor = MagicMock()
        extractor.extract_entities = AsyncMock(side_effect=RuntimeError("extraction timed out"))
        service = TradeWorkflowService(store, entity_extractor=extractor)

        doc = make_document("q1", "quotation", supplier="Acme")
        await store.insert_document(doc)
        txn = await service.process_document_workflow(doc)

        for role in ("supplier", "trading_company", "customer", "consignee"):
            entity = getattr(txn.entities, role)
            assert entity == CompanyEntity(name="", address="", contact="", email="")
        extractor.extract_entities.assert_awaited_once()


class TestCorrelationScenarios:
    """Multi-document deals."""

    @pytest.mark.asyncio
    async def test_quotation_then_po_same_supplier(self, submit, make_document):
        first = await submit(make_document("q1", "quotation", supplier="Acme Ltd"))
        second = await submit(make_document("po1", "purchase_order", supplier="ACME", upload_offset_minutes=5))

        assert second.id == first.id
        assert len(second.documents) == 2
        assert second.documents[1].role == "received"
        assert second.status == "po_issued"
        assert actions(second) == ["wait_proforma_invoice"]
        assert [h.to_step for h in second.workflow_history] == ["quotation_received", "po_issued"]
        assert second.workflow_history[1].trigger == "purchase_order"
        assert second.workflow_history[1].document_id == "po1"

    @pytest.mark.asyncio
    async def test_different_suppliers_get_separate_transactions(self, service, submit, make_document):
        first = await submit(make_document("q1", "quotation", supplier="Acme Ltd"))
        second = await submit(make_document("q2", "quotation", supplier="Beta Ltd"))

        assert first.id != second.id
        assert len(await service.list_user_transactions("user-1")) == 2

    @pytest.mark.asyncio
    async def test_full_deal_reaches_completed(self, service, submit, make_document):
        txn = await submit(make_document("q1", "quotation", supplier="Acme"))
        txn = await submit(make_document("po1", "purchase_order", supplier="Acme", upload_offset_minutes=1))
        assert txn.status == "po_issued"

        txn = await submit(make_document("pi1", "proforma_invoice", supplier="Acme", upload_offset_minutes=2))
        assert txn.status == "proforma_received"
        assert actions(txn) == ["make_payment"]

        txn = await submit(make_document("ci1", "commercial_invoice", supplier="Acme", upload_offset_minutes=3))
        assert txn.status == "invoice_received"
        assert actions(txn) == ["request_packing_list", "generate_supporting_docs"]

        txn = await submit(make_document("pl1", "packing_list", supplier="Acme", upload_offset_minutes=4))
        assert txn.status == "completed"
        assert txn.is_completed
        assert txn.next_suggested_actions == []
        assert len(txn.documents) == 5

        documents = await service.get_transaction_documents(txn.id)
        assert [d.id for d in documents] == ["q1", "po1", "pi1", "ci1", "pl1"]

    @pytest.mark.asyncio
    async def test_completed_transaction_is_not_reused(self, submit, make_document):
        await submit(make_document("q1", "quotation", supplier="Acme"))
        await submit(make_document("po1", "purchase_order", supplier="Acme"))
        await submit(make_document("pi1", "proforma_invoice", supplier="Acme"))
        await submit(make_document("ci1", "commercial_invoice", supplier="Acme"))
        done = await submit(make_document("pl1", "packing_list", supplier="Acme"))
        assert done.status == "completed"

        fresh = await submit(make_document("q2", "quotation", supplier="Acme"))
        assert fresh.id != done.id
        assert fresh.status == "quotation_received"

    @pytest.mark.asyncio
    async def test_non_advancing_document_is_still_attached(self, submit, make_document):
        await submit(make_document("q1", "quotation", supplier="Acme"))
        txn = await submit(make_document("cl1", "covering_letter", supplier="Acme"))

        assert txn.status == "quotation_received"
        assert len(txn.documents) == 2
        assert len(txn.workflow_history) == 1

    @pytest.mark.asyncio
    async def test_attach_merges_missing_entities(self, submit, make_document):
        await submit(make_document("q1", "quotation", supplier="Acme"))
        txn = await submit(make_document(
            "po1", "purchase_order", supplier="Acme Ltd",
            entities=DocumentEntities(
                supplier=CompanyEntity(name="Acme Ltd", email="sales@acme.test"),
                consignee=CompanyEntity(name="Port Warehouse"),
            ),
        ))

        assert txn.entities.supplier.name == "Acme"
        assert txn.entities.supplier.email == "sales@acme.test"
        assert txn.entities.consignee.name == "Port Warehouse"


class TestProcessingGuards:
    """Input validation and idempotence."""

    @pytest.mark.asyncio
    async def test_unprocessed_document_rejected(self, store, service, make_document):
        doc = make_document("q1", "quotation", supplier="Acme", status="processing")
        await store.insert_document(doc)
        with pytest.raises(CorrelationInputError):
            await service.process_document_workflow(doc)
        assert await service.list_user_transactions("user-1") == []

    @pytest.mark.asyncio
    async def test_document_without_user_rejected(self, service, make_document):
        with pytest.raises(CorrelationInputError):
            await service.process_document_workflow(make_document("q1", "quotation", user_id=""))

    @pytest.mark.asyncio
    async def test_already_attached_document_returns_transaction(self, store, service, submit, make_document):
        doc = make_document("q1", "quotation", supplier="Acme")
        first = await submit(doc)

        stored = await store.get_document("q1")
        again = await service.process_document_workflow(stored)

        assert again.id == first.id
        assert len(again.documents) == 1

    @pytest.mark.asyncio
    async def test_dangling_transaction_reference(self, service, make_document):
        doc = make_document("q1", "quotation", supplier="Acme")
        doc.transaction_id = "missing"
        with pytest.raises(TransactionNotFoundError):
            await service.process_document_workflow(doc)

    @pytest.mark.asyncio
    async def test_document_not_in_store(self, store, service, make_document):
        """An unstored document is rejected before any transaction is written."""
        with pytest.raises(DocumentNotFoundError):
            await service.process_document_workflow(make_document("q1", "quotation", supplier="Acme"))
        assert store._transactions == {}

    @pytest.mark.asyncio
    async def test_unstored_document_does_not_absorb_later_documents(self, store, service, submit, make_document):
        with pytest.raises(DocumentNotFoundError):
            await service.process_document_workflow(make_document("ghost", "quotation", supplier="Acme"))

        txn = await submit(make_document("q1", "quotation", supplier="Acme"))
        assert [d.document_id for d in txn.documents] == ["q1"]

    @pytest.mark.asyncio
    async def test_stale_copy_of_bound_document(self, store, service, submit, make_document):
        """A caller copy without transaction_id never re-correlates a bound document."""
        acme = await submit(make_document("q1", "quotation", supplier="Acme"))
        beta = await submit(make_document("q2", "quotation", supplier="Beta"))

        stale = make_document("q2", "quotation", supplier="Acme")
        assert stale.transaction_id is None
        result = await service.process_document_workflow(stale)

        assert result.id == beta.id
        assert stale.transaction_id == beta.id
        acme_after = await store.get_transaction(acme.id)
        assert [d.document_id for d in acme_after.documents] == ["q1"]
        beta_after = await store.get_transaction(beta.id)
        assert [d.document_id for d in beta_after.documents] == ["q2"]

    @pytest.mark.asyncio
    async def test_process_stored_document(self, store, service, make_document):
        await store.insert_document(make_document("q1", "quotation", supplier="Acme"))
        txn = await service.process_stored_document("q1")
        assert txn.documents[0].document_id == "q1"

        with pytest.raises(DocumentNotFoundError):
            await service.process_stored_document("nope")


class SlowInMemoryStore(InMemoryTransactionStore):
    """Yields to the event loop between the correlation read and the insert."""

    async def find_open_transactions(self, user_id, created_after):
        result = await super().find_open_transactions(user_id, created_after)
        await asyncio.sleep(0.01)
        return result

    async def insert_transaction(self, transaction):
        await asyncio.sleep(0.01)
        await super().insert_transaction(transaction)


class TestConcurrency:
    """Per-user serialization of correlate-then-create."""

    @pytest.mark.asyncio
    async def test_same_user_documents_share_one_transaction(self, make_document):
        store = SlowInMemoryStore()
        service = TradeWorkflowService(store)
        quotation = make_document("q1", "quotation", supplier="Acme")
        po = make_document("po1", "purchase_order", supplier="Acme")
        await store.insert_document(quotation)
        await store.insert_document(po)

        first, second = await asyncio.gather(
            service.process_document_workflow(quotation),
            service.process_document_workflow(po),
        )

        assert first.id == second.id
        transactions = await service.list_user_transactions("user-1")
        assert len(transactions) == 1
        assert len(transactions[0].documents) == 2

    @pytest.mark.asyncio
    async def test_different_users_do_not_share(self, make_document):
        store = SlowInMemoryStore()
        service = TradeWorkflowService(store)
        a = make_document("a1", "quotation", supplier="Acme", user_id="user-a")
        b = make_document("b1", "quotation", supplier="Acme", user_id="user-b")
        await store.insert_document(a)
        await store.insert_document(b)

        first, second = await asyncio.gather(
            service.process_document_workflow(a),
            service.process_document_workflow(b),
        )
        assert first.id != second.id
        assert first.user_id == "user-a"
        assert second.user_id == "user-b"

    @pytest.mark.asyncio
    async def test_user_locks_released_after_use(self, service, submit, make_document):
        """Idle users do not keep a lock around."""
        for i in range(5):
            await submit(make_document(f"q{i}", "quotation", supplier="Acme", user_id=f"user-{i}"))
        await service.update_transaction_status("missing", "user-9", "po_issued")

        assert len(service._user_locks) == 0


class TestManualStatusUpdate:
    """Manual overrides."""

    @pytest.mark.asyncio
    async def test_update_to_mapped_status(self, service, submit, make_document):
        txn = await submit(make_document("q1", "quotation", supplier="Acme"))

        updated = await service.update_transaction_status(txn.id, "user-1", "payment_made", notes="Wire sent")

        assert updated.status == "payment_made"
        assert updated.current_step.step_id == "payment_made"
        assert actions(updated) == ["wait_order_ready"]
        last = updated.workflow_history[-1]
        assert last.trigger == "manual_override"
        assert last.actor == "user"
        assert last.reason == "Wire sent"
        assert last.from_step == "quotation_received"

    @pytest.mark.asyncio
    async def test_manual_override_may_move_backwards(self, service, submit, make_document):
        await submit(make_document("q1", "quotation", supplier="Acme"))
        txn = await submit(make_document("po1", "purchase_order", supplier="Acme"))

        updated = await service.update_transaction_status(txn.id, "user-1", "quotation_received")
        assert updated.current_step.step_id == "quotation_received"

    @pytest.mark.asyncio
    async def test_unmapped_status_leaves_transaction_untouched(self, store, service, submit, make_document):
        txn = await submit(make_document("q1", "quotation", supplier="Acme"))
        before = copy.deepcopy(store._transactions[txn.id])

        result = await service.update_transaction_status(txn.id, "user-1", "shipped")

        assert result is None
        assert store._transactions[txn.id] == before

    @pytest.mark.asyncio
    async def test_other_users_transaction(self, service, submit, make_document):
        txn = await submit(make_document("q1", "quotation", supplier="Acme"))
        assert await service.update_transaction_status(txn.id, "user-2", "po_issued") is None

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, service):
        assert await service.update_transaction_status("missing", "user-1", "po_issued") is None


class TestQueries:
    """Listing and stats."""

    @pytest.mark.asyncio
    async def test_stats_include_every_status(self, service, submit, make_document):
        await submit(make_document("q1", "quotation", supplier="Acme"))
        await submit(make_document("q2", "quotation", supplier="Beta"))
        await submit(make_document("po3", "purchase_order", supplier="Gamma"))

        stats = await service.get_transaction_stats("user-1")

        assert stats["total"] == 3
        assert stats["by_status"]["quotation_received"] == 2
        assert stats["by_status"]["po_issued"] == 1
        assert stats["by_status"]["completed"] == 0
        assert len(stats["by_status"]) == 7

    @pytest.mark.asyncio
    async def test_stats_completed_active_and_value(self, store, service, submit, make_document):
        for doc_id, doc_type in [("q1", "quotation"), ("po1", "purchase_order"),
                                 ("pi1", "proforma_invoice"), ("ci1", "commercial_invoice"),
                                 ("pl1", "packing_list")]:
            done = await submit(make_document(doc_id, doc_type, supplier="Acme"))
        open_txn = await submit(make_document("q2", "quotation", supplier="Beta"))
        await submit(make_document("q3", "quotation", supplier="Gamma"))
        await store.update_transaction(done.id, {"total_amount": 1500.0})
        await store.update_transaction(open_txn.id, {"total_amount": 250.5})

        stats = await service.get_transaction_stats("user-1")

        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["active"] == 2
        assert stats["total_value"] == 1750.5

    @pytest.mark.asyncio
    async def test_stats_for_user_without_transactions(self, service):
        stats = await service.get_transaction_stats("nobody")
        assert stats["total"] == 0
        assert stats["active"] == 0
        assert stats["total_value"] == 0.0

    @pytest.mark.asyncio
    async def test_list_search_by_company_and_id(self, service, submit, make_document):
        acme = await submit(make_document("q1", "quotation", supplier="Acme Ltd", buyer="Initech"))
        await submit(make_document("q2", "quotation", supplier="Beta Corp"))

        by_supplier = await service.list_user_transactions("user-1", search="acme")
        assert [t.id for t in by_supplier] == [acme.id]

        by_buyer = await service.list_user_transactions("user-1", search="INITECH")
        assert [t.id for t in by_buyer] == [acme.id]

        by_id = await service.list_user_transactions("user-1", search=acme.id[:8])
        assert [t.id for t in by_id] == [acme.id]

        assert await service.list_user_transactions("user-1", search="nomatch") == []

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, service, submit, make_document):
        await submit(make_document("q1", "quotation", supplier="Acme"))
        await submit(make_document("po2", "purchase_order", supplier="Beta"))

        only_po = await service.list_user_transactions("user-1", status="po_issued")
        assert [t.status for t in only_po] == ["po_issued"]

    @pytest.mark.asyncio
    async def test_list_pagination(self, service, submit, make_document):
        for i in range(3):
            await submit(make_document(f"q{i}", "quotation", supplier=f"Supplier {i}"))

        page = await service.list_user_transactions("user-1", limit=2, offset=0)
        rest = await service.list_user_transactions("user-1", limit=2, offset=2)
        assert len(page) == 2
        assert len(rest) == 1
        assert {t.id for t in page}.isdisjoint({t.id for t in rest})

    @pytest.mark.asyncio
    async def test_get_transaction_scoped_to_user(self, service, submit, make_document):
        txn = await submit(make_document("q1", "quotation", supplier="Acme"))
        assert (await service.get_transaction(txn.id, "user-1")).id == txn.id
        assert await service.get_transaction(txn.id, "user-2") is None


class TestPersistenceFailures:
    """Store failures surface as WorkflowPersistenceError."""

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, make_document):
        store = InMemoryTransactionStore()
        store.find_open_transactions = AsyncMock(
            side_effect=WorkflowPersistenceError("Store operation 'find_open_transactions' failed")
        )
        service = TradeWorkflowService(store)
        doc = make_document("q1", "quotation", supplier="Acme")
        await store.insert_document(doc)

        with pytest.raises(WorkflowPersistenceError):
            await service.process_document_workflow(doc)
        assert store._transactions == {}
