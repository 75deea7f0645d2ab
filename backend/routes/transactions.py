"""
Trade Document Hub - Workflow Transactions Router

Transaction dashboard endpoints and the document-processing trigger.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
from pydantic import BaseModel
import logging

from services.workflow_engine import WorkflowEngine
from services.workflow_errors import (
    CorrelationInputError, DocumentNotFoundError, TransactionNotFoundError,
    WorkflowPersistenceError
)
from .auth import get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow", tags=["workflow"])

# Workflow service - set by main app
workflow_service = None

def set_dependencies(service):
    global workflow_service
    workflow_service = service


# ==================== MODELS ====================

class StatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = None


def _raise_for_persistence(error: WorkflowPersistenceError):
    raise HTTPException(
        status_code=409 if error.conflict else 503,
        detail=error.message
    )


# ==================== PROCESSING ====================

@router.post("/documents/{document_id}/process")
async def process_document(document_id: str, user_id: str = Depends(get_current_user_id)):
    """Run a processed document through correlation and the workflow."""
    document = await workflow_service.store.get_document(document_id)
    if document is None or document.user_id != user_id:
        raise HTTPException(status_code=404, detail="Document not found")

    try:
        transaction = await workflow_service.process_document_workflow(document)
    except CorrelationInputError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except (DocumentNotFoundError, TransactionNotFoundError) as e:
        raise HTTPException(status_code=404, detail=e.message)
    except WorkflowPersistenceError as e:
        _raise_for_persistence(e)

    return {
        "success": True,
        "document_id": document_id,
        "transaction": transaction.model_dump(mode="json")
    }


# ==================== TRANSACTIONS ====================

@router.get("/transactions")
async def list_transactions(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id)
):
    """
    List the user's transactions, most recently updated first.
    `search` matches the transaction id and company names.
    """
    if status == "all":
        status = None
    transactions = await workflow_service.list_user_transactions(
        user_id, status, limit, offset, search=search or None
    )
    return {
        "success": True,
        "transactions": [t.model_dump(mode="json") for t in transactions],
        "total": len(transactions),
        "has_more": len(transactions) == limit
    }


@router.get("/stats")
async def get_transaction_stats(user_id: str = Depends(get_current_user_id)):
    """Transaction counts by status."""
    stats = await workflow_service.get_transaction_stats(user_id)
    return {"success": True, **stats}


@router.get("/transactions/{transaction_id}")
async def get_transaction(transaction_id: str, user_id: str = Depends(get_current_user_id)):
    """Get a single transaction."""
    transaction = await workflow_service.get_transaction(transaction_id, user_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"success": True, "transaction": transaction.model_dump(mode="json")}


@router.get("/transactions/{transaction_id}/documents")
async def get_transaction_documents(transaction_id: str, user_id: str = Depends(get_current_user_id)):
    """Documents bound to a transaction, oldest first."""
    transaction = await workflow_service.get_transaction(transaction_id, user_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    documents = await workflow_service.get_transaction_documents(transaction_id)
    return {
        "success": True,
        "transaction_id": transaction_id,
        "documents": [
            d.model_dump(mode="json", exclude={"raw_text"}) for d in documents
        ]
    }


@router.put("/transactions/{transaction_id}/status")
async def update_transaction_status(
    transaction_id: str,
    update: StatusUpdate,
    user_id: str = Depends(get_current_user_id)
):
    """Manually move a transaction to the step behind a status."""
    existing = await workflow_service.get_transaction(transaction_id, user_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    try:
        transaction = await workflow_service.update_transaction_status(
            transaction_id, user_id, update.status, notes=update.notes
        )
    except WorkflowPersistenceError as e:
        _raise_for_persistence(e)

    if transaction is None:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown status: {update.status}. Valid: {WorkflowEngine.get_all_statuses()}"
        )

    return {
        "success": True,
        "transaction_id": transaction_id,
        "previous_status": existing.status,
        "new_status": transaction.status,
        "transaction": transaction.model_dump(mode="json")
    }
