"""
Trade Document Hub - Transaction Workflow Engine

This module implements the deterministic state machine that tracks a trading
deal (quotation -> purchase order -> proforma -> payment -> invoice) across the
independently uploaded documents that belong to it.

The workflow engine is pure business logic with no direct HTTP or DB calls.
The step registry and transition table are built once at import time and are
read-only afterwards; every transition decision is a total function of
(current step, accumulated document types, incoming document type).

Workflow Steps:
- quotation_received: Supplier priced the deal with a quotation
- proforma_invoice_received: Supplier priced the deal with a proforma invoice
- po_issued: Trading company confirmed the purchase
- proforma_received: Supplier issued a proforma after the PO
- payment_made: Trading company paid the supplier
- order_ready: Supplier prepared the order for shipment
- invoice_received: Commercial/tax invoice received
- completed: All closing documents received (terminal)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, List, Tuple, Iterable, Mapping, FrozenSet
import logging

from .workflow_errors import TransitionRejectedError

logger = logging.getLogger(__name__)


# =============================================================================
# DOCUMENT TYPE DEFINITIONS
# =============================================================================

class DocumentType(str, Enum):
    """Trade document kinds produced by the classification collaborator."""
    QUOTATION = "quotation"
    PROFORMA_INVOICE = "proforma_invoice"
    PURCHASE_ORDER = "purchase_order"
    INVOICE = "invoice"
    COMMERCIAL_INVOICE = "commercial_invoice"
    TAX_INVOICE = "tax_invoice"
    PACKING_LIST = "packing_list"
    BILL_OF_EXCHANGE = "bill_of_exchange"
    COVERING_LETTER = "covering_letter"
    TRANSPORT_DOCUMENT = "transport_document"
    UNKNOWN = "unknown"


# Any of these closes the invoice requirement of the final step
INVOICE_DOCUMENT_TYPES = frozenset({
    DocumentType.COMMERCIAL_INVOICE.value,
    DocumentType.TAX_INVOICE.value,
    DocumentType.INVOICE.value,
})


# =============================================================================
# WORKFLOW STEPS & STATUS
# =============================================================================

class WorkflowStepId(str, Enum):
    """Nodes of the transaction state machine."""
    QUOTATION_RECEIVED = "quotation_received"
    PROFORMA_INVOICE_RECEIVED = "proforma_invoice_received"
    PO_ISSUED = "po_issued"
    PROFORMA_RECEIVED = "proforma_received"
    PAYMENT_MADE = "payment_made"
    ORDER_READY = "order_ready"
    INVOICE_RECEIVED = "invoice_received"
    COMPLETED = "completed"


class TransactionStatus(str, Enum):
    """
    Externally visible transaction status.
    Declared in workflow order; several steps may share one status.
    """
    QUOTATION_RECEIVED = "quotation_received"
    PO_ISSUED = "po_issued"
    PROFORMA_RECEIVED = "proforma_received"
    PAYMENT_MADE = "payment_made"
    ORDER_READY = "order_ready"
    INVOICE_RECEIVED = "invoice_received"
    COMPLETED = "completed"


@dataclass(frozen=True)
class WorkflowStep:
    """A single node of the transaction state machine."""
    step_id: str
    name: str
    description: str
    required_document_types: FrozenSet[str] = frozenset()
    optional_document_types: FrozenSet[str] = frozenset()
    expected_next_step_ids: FrozenSet[str] = frozenset()

    @property
    def is_terminal(self) -> bool:
        return not self.expected_next_step_ids

    def to_dict(self) -> Dict:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "description": self.description,
            "required_document_types": sorted(self.required_document_types),
            "optional_document_types": sorted(self.optional_document_types),
            "expected_next_step_ids": sorted(self.expected_next_step_ids),
        }


def _step(step_id: WorkflowStepId, name: str, description: str,
          required: Iterable[str] = (), optional: Iterable[str] = (),
          next_steps: Iterable[WorkflowStepId] = ()) -> WorkflowStep:
    return WorkflowStep(
        step_id=step_id.value,
        name=name,
        description=description,
        required_document_types=frozenset(required),
        optional_document_types=frozenset(optional),
        expected_next_step_ids=frozenset(s.value for s in next_steps),
    )


WORKFLOW_STEPS: Mapping[str, WorkflowStep] = MappingProxyType({
    step.step_id: step for step in (
        _step(
            WorkflowStepId.QUOTATION_RECEIVED,
            "Quotation Received",
            "Supplier has provided pricing via quotation",
            required=["quotation"],
            next_steps=[WorkflowStepId.PO_ISSUED],
        ),
        _step(
            WorkflowStepId.PROFORMA_INVOICE_RECEIVED,
            "Proforma Invoice Received",
            "Supplier has provided pricing via proforma invoice",
            required=["proforma_invoice"],
            next_steps=[WorkflowStepId.PO_ISSUED],
        ),
        _step(
            WorkflowStepId.PO_ISSUED,
            "Purchase Order Issued",
            "Trading company has confirmed purchase with supplier",
            required=["purchase_order"],
            optional=["quotation", "proforma_invoice"],
            next_steps=[WorkflowStepId.PROFORMA_RECEIVED, WorkflowStepId.PAYMENT_MADE],
        ),
        _step(
            WorkflowStepId.PROFORMA_RECEIVED,
            "Proforma Invoice Received",
            "Supplier has issued proforma invoice after PO",
            required=["proforma_invoice", "purchase_order"],
            optional=["quotation"],
            next_steps=[WorkflowStepId.PAYMENT_MADE, WorkflowStepId.INVOICE_RECEIVED],
        ),
        _step(
            WorkflowStepId.PAYMENT_MADE,
            "Payment Made",
            "Trading company has paid supplier according to payment terms",
            required=["proforma_invoice", "purchase_order"],
            optional=["payment_confirmation"],
            next_steps=[WorkflowStepId.ORDER_READY],
        ),
        _step(
            WorkflowStepId.ORDER_READY,
            "Order Ready for Shipment",
            "Supplier has prepared the order for shipment",
            required=["proforma_invoice", "purchase_order"],
            optional=["shipping_confirmation"],
            next_steps=[WorkflowStepId.INVOICE_RECEIVED],
        ),
        _step(
            WorkflowStepId.INVOICE_RECEIVED,
            "Invoice and Documents Received",
            "Supplier has issued commercial/tax invoice and packing list",
            required=["commercial_invoice", "packing_list"],
            optional=["tax_invoice", "bill_of_lading"],
            next_steps=[WorkflowStepId.COMPLETED],
        ),
        _step(
            WorkflowStepId.COMPLETED,
            "Transaction Completed",
            "All documents received and transaction is complete",
            required=["commercial_invoice", "packing_list", "purchase_order"],
            optional=["bill_of_lading", "covering_letter", "bill_of_exchange"],
        ),
    )
})


# Canonical step -> status mapping; a transaction's status is always derived from it
STEP_STATUS_MAPPING: Mapping[str, str] = MappingProxyType({
    WorkflowStepId.QUOTATION_RECEIVED.value: TransactionStatus.QUOTATION_RECEIVED.value,
    WorkflowStepId.PROFORMA_INVOICE_RECEIVED.value: TransactionStatus.QUOTATION_RECEIVED.value,
    WorkflowStepId.PO_ISSUED.value: TransactionStatus.PO_ISSUED.value,
    WorkflowStepId.PROFORMA_RECEIVED.value: TransactionStatus.PROFORMA_RECEIVED.value,
    WorkflowStepId.PAYMENT_MADE.value: TransactionStatus.PAYMENT_MADE.value,
    WorkflowStepId.ORDER_READY.value: TransactionStatus.ORDER_READY.value,
    WorkflowStepId.INVOICE_RECEIVED.value: TransactionStatus.INVOICE_RECEIVED.value,
    WorkflowStepId.COMPLETED.value: TransactionStatus.COMPLETED.value,
})


# Triggering document type -> first step of a brand-new transaction
INITIAL_STEP_MAPPING: Mapping[str, str] = MappingProxyType({
    DocumentType.QUOTATION.value: WorkflowStepId.QUOTATION_RECEIVED.value,
    DocumentType.PROFORMA_INVOICE.value: WorkflowStepId.PROFORMA_INVOICE_RECEIVED.value,
    DocumentType.PURCHASE_ORDER.value: WorkflowStepId.PO_ISSUED.value,
})

DEFAULT_INITIAL_STEP = WorkflowStepId.QUOTATION_RECEIVED.value


# =============================================================================
# TRANSITION TABLE
# =============================================================================

@dataclass(frozen=True)
class TransitionRule:
    """
    Guarded edge of the state machine.

    A rule fires when every guard holds:
    - incoming_types: the incoming document type is one of these (empty = any)
    - requires_all: accumulated types contain every one of these
    - requires_any: accumulated types contain at least one of these (empty = no guard)
    """
    to_step: str
    description: str
    incoming_types: FrozenSet[str] = frozenset()
    requires_all: FrozenSet[str] = frozenset()
    requires_any: FrozenSet[str] = frozenset()

    def matches(self, accumulated: FrozenSet[str], incoming: str) -> bool:
        if self.incoming_types and incoming not in self.incoming_types:
            return False
        if not self.requires_all <= accumulated:
            return False
        if self.requires_any and not (self.requires_any & accumulated):
            return False
        return True


def _rule(to_step: WorkflowStepId, description: str, incoming: Iterable[str] = (),
          requires_all: Iterable[str] = (), requires_any: Iterable[str] = ()) -> TransitionRule:
    return TransitionRule(
        to_step=to_step.value,
        description=description,
        incoming_types=frozenset(incoming),
        requires_all=frozenset(requires_all),
        requires_any=frozenset(requires_any),
    )


# Format: {current_step: (rule, ...)} evaluated in order, first match wins.
# Steps without rules (payment_made, completed) only accumulate documents.
TRANSITION_RULES: Mapping[str, Tuple[TransitionRule, ...]] = MappingProxyType({
    WorkflowStepId.QUOTATION_RECEIVED.value: (
        _rule(WorkflowStepId.PO_ISSUED, "Purchase order issued against quotation",
              incoming=["purchase_order"]),
    ),
    WorkflowStepId.PROFORMA_INVOICE_RECEIVED.value: (
        _rule(WorkflowStepId.PO_ISSUED, "Purchase order issued against proforma invoice",
              incoming=["purchase_order"]),
    ),
    WorkflowStepId.PO_ISSUED.value: (
        _rule(WorkflowStepId.PROFORMA_RECEIVED, "Proforma invoice issued after quoted PO",
              incoming=["proforma_invoice"], requires_all=["quotation"]),
        _rule(WorkflowStepId.PROFORMA_RECEIVED, "Proforma invoice already on file",
              requires_all=["proforma_invoice"]),
    ),
    WorkflowStepId.PROFORMA_RECEIVED.value: (
        _rule(WorkflowStepId.INVOICE_RECEIVED, "Commercial/tax invoice received",
              incoming=["commercial_invoice", "tax_invoice"]),
    ),
    WorkflowStepId.ORDER_READY.value: (
        _rule(WorkflowStepId.INVOICE_RECEIVED, "Commercial/tax invoice received",
              incoming=["commercial_invoice", "tax_invoice"]),
    ),
    WorkflowStepId.INVOICE_RECEIVED.value: (
        _rule(WorkflowStepId.COMPLETED, "Invoice and packing list on file",
              requires_all=["packing_list"], requires_any=INVOICE_DOCUMENT_TYPES),
    ),
})


@dataclass(frozen=True)
class TransitionDecision:
    """Outcome of evaluating the transition table. `next_step_id` None = stay put."""
    current_step_id: str
    incoming_document_type: str
    next_step_id: Optional[str] = None
    reason: str = "No transition rule matched"

    @property
    def advanced(self) -> bool:
        return self.next_step_id is not None


# =============================================================================
# WORKFLOW HISTORY ENTRY
# =============================================================================

class WorkflowHistoryEntry:
    """Represents a single step change recorded on a transaction."""

    def __init__(
        self,
        from_step: Optional[str],
        to_step: str,
        trigger: str,
        actor: str = "system",
        reason: Optional[str] = None,
        document_id: Optional[str] = None
    ):
        self.timestamp = datetime.now(timezone.utc)
        self.from_step = from_step
        self.to_step = to_step
        self.trigger = trigger
        self.actor = actor
        self.reason = reason
        self.document_id = document_id

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_step": self.from_step,
            "to_step": self.to_step,
            "trigger": self.trigger,
            "actor": self.actor,
            "reason": self.reason,
            "document_id": self.document_id,
        }


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

class WorkflowEngine:
    """
    Transaction workflow state machine.

    Stateless: every method reads the module-level registry and tables.
    """

    @staticmethod
    def get_step(step_id: str) -> WorkflowStep:
        """Look up a step by id. Raises KeyError for unknown ids."""
        key = step_id.value if isinstance(step_id, WorkflowStepId) else step_id
        return WORKFLOW_STEPS[key]

    @staticmethod
    def status_for_step(step_id: str) -> str:
        """Canonical externally visible status of a step."""
        key = step_id.value if isinstance(step_id, WorkflowStepId) else step_id
        return STEP_STATUS_MAPPING[key]

    @staticmethod
    def initial_step_for(document_type: str) -> WorkflowStep:
        """First step of a transaction opened by a document of this type."""
        key = document_type.value if isinstance(document_type, DocumentType) else document_type
        return WORKFLOW_STEPS[INITIAL_STEP_MAPPING.get(key, DEFAULT_INITIAL_STEP)]

    @staticmethod
    def step_for_status(status: str) -> WorkflowStep:
        """
        First registered step whose canonical status equals `status`.

        Raises:
            TransitionRejectedError: if no step maps to the status
        """
        key = status.value if isinstance(status, TransactionStatus) else status
        for step_id, step in WORKFLOW_STEPS.items():
            if STEP_STATUS_MAPPING[step_id] == key:
                return step
        raise TransitionRejectedError(str(key))

    @staticmethod
    def evaluate_transition(
        current_step_id: str,
        accumulated_document_types: Iterable[str],
        incoming_document_type: str
    ) -> TransitionDecision:
        """
        Decide whether a transaction advances after a document is attached.

        Args:
            current_step_id: The transaction's current step
            accumulated_document_types: Types of every attached document,
                including the incoming one
            incoming_document_type: Type of the document just attached

        Returns:
            TransitionDecision; `next_step_id` is None when no rule fires
        """
        current_key = current_step_id.value if isinstance(current_step_id, WorkflowStepId) else current_step_id
        incoming = incoming_document_type.value if isinstance(incoming_document_type, DocumentType) else incoming_document_type
        accumulated = frozenset(
            t.value if isinstance(t, DocumentType) else t for t in accumulated_document_types
        )

        for rule in TRANSITION_RULES.get(current_key, ()):
            if rule.matches(accumulated, incoming):
                return TransitionDecision(
                    current_step_id=current_key,
                    incoming_document_type=incoming,
                    next_step_id=rule.to_step,
                    reason=rule.description,
                )

        return TransitionDecision(
            current_step_id=current_key,
            incoming_document_type=incoming,
            reason=f"No transition from '{current_key}' on '{incoming}'",
        )

    @staticmethod
    def next_step(
        current_step_id: str,
        accumulated_document_types: Iterable[str],
        incoming_document_type: str
    ) -> Optional[str]:
        """Shortcut for evaluate_transition(...).next_step_id."""
        return WorkflowEngine.evaluate_transition(
            current_step_id, accumulated_document_types, incoming_document_type
        ).next_step_id

    @staticmethod
    def is_terminal(step_id: str) -> bool:
        """A step is terminal when nothing can follow it."""
        return WorkflowEngine.get_step(step_id).is_terminal

    @staticmethod
    def get_all_steps() -> List[WorkflowStep]:
        return list(WORKFLOW_STEPS.values())

    @staticmethod
    def get_all_statuses() -> List[str]:
        """All status values in workflow order."""
        return [s.value for s in TransactionStatus]

    @staticmethod
    def status_rank(status: str) -> int:
        """Position of a status in workflow order."""
        key = status.value if isinstance(status, TransactionStatus) else status
        return WorkflowEngine.get_all_statuses().index(key)

    @staticmethod
    def get_all_document_types() -> List[str]:
        return [d.value for d in DocumentType]
