"""
Trade Document Hub - Services

Correlation and workflow core for multi-document trade transactions.

Components:
- workflow_engine: Step registry, status mapping and transition table
- suggestion_engine: Next-action suggestions per step
- transaction_models: Document and transaction models
- entity_extractor: Entity extraction interface
- transaction_correlator: Matches documents to open transactions
- transaction_store: In-memory and MongoDB persistence
- trade_workflow_service: The orchestrator
"""

from .trade_workflow_service import TradeWorkflowService
from .transaction_store import TransactionStore, InMemoryTransactionStore, MongoTransactionStore
from .transaction_correlator import TransactionCorrelator, normalize_company_name
from .workflow_engine import WorkflowEngine

__all__ = [
    'TradeWorkflowService',
    'TransactionStore',
    'InMemoryTransactionStore',
    'MongoTransactionStore',
    'TransactionCorrelator',
    'normalize_company_name',
    'WorkflowEngine',
]
