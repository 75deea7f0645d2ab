"""
Trade Document Hub - Next-Action Suggestions

Maps a transaction's current step and the document types it has accumulated
to an ordered list of suggested next actions. Pure function: no I/O, and the
returned list always replaces whatever the transaction held before.

Confidence values are fixed per suggestion; there is no calibration data
behind them yet.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, List, Mapping, Tuple

from .transaction_models import WorkflowSuggestion, SuggestionPriority
from .workflow_engine import WorkflowStepId, DocumentType


@dataclass(frozen=True)
class SuggestionTemplate:
    action: str
    description: str
    priority: SuggestionPriority
    confidence: float
    required_document_types: Tuple[str, ...] = ()

    def build(self) -> WorkflowSuggestion:
        return WorkflowSuggestion(
            action=self.action,
            description=self.description,
            priority=self.priority,
            required_document_types=list(self.required_document_types),
            confidence=self.confidence,
        )


ISSUE_PURCHASE_ORDER = SuggestionTemplate(
    action="issue_purchase_order",
    description="Issue Purchase Order (PO) to confirm purchase from supplier",
    priority=SuggestionPriority.HIGH,
    confidence=0.95,
    required_document_types=(DocumentType.PURCHASE_ORDER.value,),
)

WAIT_PROFORMA_INVOICE = SuggestionTemplate(
    action="wait_proforma_invoice",
    description="Wait for supplier to issue Proforma Invoice",
    priority=SuggestionPriority.MEDIUM,
    confidence=0.85,
)

PAY_AFTER_PO = SuggestionTemplate(
    action="make_payment",
    description="Proceed with payment according to payment terms",
    priority=SuggestionPriority.HIGH,
    confidence=0.90,
)

PAY_AFTER_PROFORMA = SuggestionTemplate(
    action="make_payment",
    description="Make payment to supplier (full or partial based on payment terms)",
    priority=SuggestionPriority.HIGH,
    confidence=0.95,
)

WAIT_ORDER_READY = SuggestionTemplate(
    action="wait_order_ready",
    description="Wait for supplier to prepare order for shipment",
    priority=SuggestionPriority.MEDIUM,
    confidence=0.80,
)

WAIT_INVOICE_DOCUMENTS = SuggestionTemplate(
    action="wait_invoice_documents",
    description="Wait for supplier to issue commercial/tax invoice and packing list",
    priority=SuggestionPriority.HIGH,
    confidence=0.90,
)

REQUEST_PACKING_LIST = SuggestionTemplate(
    action="request_packing_list",
    description="Request packing list from supplier",
    priority=SuggestionPriority.HIGH,
    confidence=0.95,
    required_document_types=(DocumentType.PACKING_LIST.value,),
)

GENERATE_SUPPORTING_DOCS = SuggestionTemplate(
    action="generate_supporting_docs",
    description="Generate covering letter and bill of exchange if needed",
    priority=SuggestionPriority.MEDIUM,
    confidence=0.75,
)


# Steps whose suggestions do not depend on accumulated documents
STATIC_SUGGESTIONS: Mapping[str, Tuple[SuggestionTemplate, ...]] = MappingProxyType({
    WorkflowStepId.QUOTATION_RECEIVED.value: (ISSUE_PURCHASE_ORDER,),
    WorkflowStepId.PROFORMA_INVOICE_RECEIVED.value: (ISSUE_PURCHASE_ORDER,),
    WorkflowStepId.PROFORMA_RECEIVED.value: (PAY_AFTER_PROFORMA,),
    WorkflowStepId.PAYMENT_MADE.value: (WAIT_ORDER_READY,),
    WorkflowStepId.ORDER_READY.value: (WAIT_INVOICE_DOCUMENTS,),
    WorkflowStepId.COMPLETED.value: (),
})


def suggest(step_id: str, accumulated_document_types: Iterable[str]) -> List[WorkflowSuggestion]:
    """
    Suggested next actions for a transaction.

    Args:
        step_id: Current workflow step id
        accumulated_document_types: Types of every document attached so far

    Returns:
        Suggestions in priority order as the UI should list them
    """
    step_key = step_id.value if isinstance(step_id, WorkflowStepId) else step_id
    document_types = {
        t.value if isinstance(t, DocumentType) else t for t in accumulated_document_types
    }

    if step_key == WorkflowStepId.PO_ISSUED.value:
        # Quoted deals still expect a proforma; proforma-first deals go to payment
        if DocumentType.QUOTATION.value in document_types:
            templates = (WAIT_PROFORMA_INVOICE,)
        else:
            templates = (PAY_AFTER_PO,)
    elif step_key == WorkflowStepId.INVOICE_RECEIVED.value:
        templates = ()
        if DocumentType.PACKING_LIST.value not in document_types:
            templates += (REQUEST_PACKING_LIST,)
        templates += (GENERATE_SUPPORTING_DOCS,)
    else:
        templates = STATIC_SUGGESTIONS.get(step_key, ())

    return [template.build() for template in templates]
