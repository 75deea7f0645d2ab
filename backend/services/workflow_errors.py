"""
Trade Document Hub - Workflow Exceptions

Failure taxonomy for correlation and the transaction state machine.
"""

from typing import Dict, Optional


class TradeWorkflowError(Exception):
    """Base exception for transaction workflow errors."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class CorrelationInputError(TradeWorkflowError):
    """Raised when a document cannot be submitted for correlation."""
    pass


class TransactionNotFoundError(TradeWorkflowError):
    """Raised when a transaction lookup finds nothing."""
    def __init__(self, transaction_id: str, message: str = None):
        self.transaction_id = transaction_id
        super().__init__(
            message or f"Transaction '{transaction_id}' not found",
            {"transaction_id": transaction_id},
        )


class DocumentNotFoundError(TradeWorkflowError):
    """Raised when a document lookup finds nothing."""
    def __init__(self, document_id: str, message: str = None):
        self.document_id = document_id
        super().__init__(
            message or f"Document '{document_id}' not found",
            {"document_id": document_id},
        )


class TransitionRejectedError(TradeWorkflowError):
    """
    Raised when a manual status override names a status that no workflow
    step maps to.
    """
    def __init__(self, status: str, message: str = None):
        self.status = status
        super().__init__(
            message or f"No workflow step maps to status '{status}'",
            {"status": status},
        )


class WorkflowPersistenceError(TradeWorkflowError):
    """Raised when the store is unreachable or a write conflicts."""
    def __init__(self, message: str, details: Optional[Dict] = None, conflict: bool = False):
        self.conflict = conflict
        super().__init__(message, details)
