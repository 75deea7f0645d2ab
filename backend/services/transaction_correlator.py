"""
Trade Document Hub - Transaction Correlation

Decides whether a newly processed document belongs to one of the user's open
transactions. Matching is exact equality of normalized company names:

1. Supplier: the document's supplier (entity snapshot, else `supplier_name` /
   `seller_name` fields) against the transaction's supplier, falling back to
   its trading company.
2. Trading company: the document's trading company (entity snapshot, else
   `buyer_name` / `customer_name` fields) against the transaction's trading
   company.

Candidates are the user's non-completed transactions created inside the
correlation window, newest first; the first candidate that matches wins.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from .transaction_models import BusinessTransaction, CompanyEntity, ProcessedDocument
from .transaction_store import TransactionStore
from .workflow_config import CORRELATION_WINDOW_DAYS
from .workflow_errors import CorrelationInputError

logger = logging.getLogger(__name__)

SUPPLIER_FIELD_KEYS = ["supplier_name", "seller_name"]
TRADING_COMPANY_FIELD_KEYS = ["buyer_name", "customer_name"]

# One trailing legal suffix, optionally dotted ("ltd."), separated by whitespace
LEGAL_SUFFIX_PATTERN = re.compile(r"\s+(?:ltd|limited|corp|inc|company)\.?$", re.IGNORECASE)


def normalize_company_name(name: Optional[str]) -> str:
    """
    Normalize a company name for correlation.

    Lowercases, trims, and strips a single trailing legal suffix
    (ltd, limited, corp, inc, company).
    """
    if not name:
        return ""
    normalized = name.lower().strip()
    normalized = LEGAL_SUFFIX_PATTERN.sub("", normalized)
    return normalized.strip()


def company_name(entity: Optional[CompanyEntity]) -> Optional[str]:
    if entity is None or not entity.name:
        return None
    return entity.name


def names_match(left: Optional[str], right: Optional[str]) -> bool:
    """Both names present and equal after normalization."""
    if not left or not right:
        return False
    normalized_left = normalize_company_name(left)
    return bool(normalized_left) and normalized_left == normalize_company_name(right)


class TransactionCorrelator:
    """
    Finds the open transaction a processed document belongs to.

    Usage:
        correlator = TransactionCorrelator(store)
        transaction = await correlator.find_related_transaction(document)
        if transaction is None:
            ...  # start a new transaction
    """

    def __init__(self, store: TransactionStore, window_days: int = CORRELATION_WINDOW_DAYS):
        self.store = store
        self.window_days = window_days

    @staticmethod
    def validate_document(document: ProcessedDocument) -> None:
        """
        Raises:
            CorrelationInputError: when the document cannot be correlated
        """
        if not document.id:
            raise CorrelationInputError("Document has no id")
        if not document.user_id:
            raise CorrelationInputError(
                f"Document '{document.id}' has no user id",
                {"document_id": document.id},
            )

    @staticmethod
    def document_supplier_name(document: ProcessedDocument) -> Optional[str]:
        entities = document.entities
        return (
            company_name(entities.supplier if entities else None)
            or document.field_value(SUPPLIER_FIELD_KEYS)
        )

    @staticmethod
    def document_trading_company_name(document: ProcessedDocument) -> Optional[str]:
        entities = document.entities
        return (
            company_name(entities.trading_company if entities else None)
            or document.field_value(TRADING_COMPANY_FIELD_KEYS)
        )

    @classmethod
    def is_related(cls, document: ProcessedDocument, transaction: BusinessTransaction) -> bool:
        """Whether the document's companies match the transaction's."""
        stored = transaction.entities

        transaction_supplier = (
            company_name(stored.supplier) or company_name(stored.trading_company)
        )
        if names_match(cls.document_supplier_name(document), transaction_supplier):
            return True

        return names_match(
            cls.document_trading_company_name(document),
            company_name(stored.trading_company),
        )

    def window_start(self, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) - timedelta(days=self.window_days)

    async def find_related_transaction(
        self,
        document: ProcessedDocument,
        now: Optional[datetime] = None
    ) -> Optional[BusinessTransaction]:
        """
        First open transaction the document correlates with, or None when a
        new transaction should be started.
        """
        self.validate_document(document)

        candidates = await self.store.find_open_transactions(
            document.user_id, self.window_start(now)
        )

        for transaction in candidates:
            if self.is_related(document, transaction):
                logger.info(
                    "Document %s correlated with transaction %s",
                    document.id, transaction.id
                )
                return transaction

        logger.debug(
            "Document %s matched none of %d open transactions",
            document.id, len(candidates)
        )
        return None
