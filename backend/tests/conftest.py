"""
Shared fixtures for the transaction workflow tests.
"""
import pytest
from datetime import datetime, timedelta, timezone

from services.transaction_models import ExtractedField, ProcessedDocument
from services.transaction_store import InMemoryTransactionStore
from services.trade_workflow_service import TradeWorkflowService


BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def build_document(
    doc_id,
    document_type,
    supplier=None,
    buyer=None,
    user_id="user-1",
    status="processed",
    upload_offset_minutes=0,
    extra_fields=None,
    entities=None,
):
    """Processed document with the usual extracted company fields."""
    fields = []
    if supplier is not None:
        fields.append(ExtractedField(key="supplier_name", value=supplier, confidence=0.92))
    if buyer is not None:
        fields.append(ExtractedField(key="buyer_name", value=buyer, confidence=0.9))
    for key, value in (extra_fields or {}).items():
        fields.append(ExtractedField(key=key, value=value, confidence=0.8))

    upload_date = BASE_TIME + timedelta(minutes=upload_offset_minutes)
    return ProcessedDocument(
        id=doc_id,
        user_id=user_id,
        document_type=document_type,
        status=status,
        extracted_fields=fields,
        raw_text=f"{document_type} text",
        original_name=f"{doc_id}.pdf",
        upload_date=upload_date,
        processed_date=upload_date + timedelta(seconds=30),
        entities=entities,
    )


@pytest.fixture
def make_document():
    return build_document


@pytest.fixture
def store():
    return InMemoryTransactionStore()


@pytest.fixture
def service(store):
    return TradeWorkflowService(store)


@pytest.fixture
def submit(store, service):
    """Insert a document and run it through the workflow."""
    async def _submit(document):
        await store.insert_document(document)
        return await service.process_document_workflow(document)
    return _submit
