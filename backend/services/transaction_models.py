"""
Trade Document Hub - Transaction & Document Models

Pydantic models for processed documents and the business transactions that
group them. Models serialize with `model_dump()` straight into MongoDB
documents (enum values as plain strings, datetimes native).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .workflow_engine import (
    DocumentType, TransactionStatus, WorkflowEngine, WorkflowStep, STEP_STATUS_MAPPING
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, Enum):
    """Processing status of an uploaded document."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class DocumentRole(str, Enum):
    """Role a document plays inside its transaction."""
    SOURCE = "source"
    GENERATED = "generated"
    RECEIVED = "received"


class SuggestionPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PaymentTermsType(str, Enum):
    FULL_ADVANCE = "full_advance"
    PARTIAL_ADVANCE = "partial_advance"
    ON_DELIVERY = "on_delivery"
    CREDIT = "credit"


class _StoredModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


# =============================================================================
# ENTITIES
# =============================================================================

class CompanyEntity(_StoredModel):
    """
    Company reference extracted from a document.
    An instance with all-empty fields means "extracted, nothing found".
    """
    name: str = ""
    address: str = ""
    contact: str = ""
    email: str = ""

    @property
    def is_empty(self) -> bool:
        return not any((self.name, self.address, self.contact, self.email))

    def merged_with(self, other: Optional["CompanyEntity"]) -> "CompanyEntity":
        """Fill empty fields from `other`; values already set are never replaced."""
        if other is None:
            return self
        return CompanyEntity(
            name=self.name or other.name,
            address=self.address or other.address,
            contact=self.contact or other.contact,
            email=self.email or other.email,
        )


ENTITY_ROLES = ("supplier", "trading_company", "customer", "consignee")


class DocumentEntities(_StoredModel):
    """
    The four company roles of a trade document.
    None = not yet extracted; CompanyEntity() = extracted and empty.
    """
    supplier: Optional[CompanyEntity] = None
    trading_company: Optional[CompanyEntity] = None
    customer: Optional[CompanyEntity] = None
    consignee: Optional[CompanyEntity] = None

    @classmethod
    def empty(cls) -> "DocumentEntities":
        """Known-empty structure used when extraction fails."""
        return cls(**{role: CompanyEntity() for role in ENTITY_ROLES})

    def merged_with(self, other: Optional["DocumentEntities"]) -> "DocumentEntities":
        """Monotonic merge: a role or field once set is never cleared."""
        if other is None:
            return self
        merged = {}
        for role in ENTITY_ROLES:
            mine = getattr(self, role)
            theirs = getattr(other, role)
            if mine is None:
                merged[role] = theirs
            else:
                merged[role] = mine.merged_with(theirs)
        return DocumentEntities(**merged)


# =============================================================================
# DOCUMENTS
# =============================================================================

class ExtractedField(_StoredModel):
    key: str
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    type: str = "text"


class ProcessedDocument(_StoredModel):
    """An uploaded trade document after classification and field extraction."""
    id: str
    user_id: str
    document_type: DocumentType = DocumentType.UNKNOWN
    status: DocumentStatus = DocumentStatus.UPLOADED
    extracted_fields: List[ExtractedField] = Field(default_factory=list)
    raw_text: Optional[str] = None
    original_name: Optional[str] = None
    upload_date: datetime = Field(default_factory=utc_now)
    processed_date: Optional[datetime] = None
    transaction_id: Optional[str] = None
    entities: Optional[DocumentEntities] = None

    def field_value(self, keys: List[str]) -> Optional[str]:
        """First non-empty extracted value among `keys`, in field order."""
        for extracted in self.extracted_fields:
            if extracted.key in keys and extracted.value:
                return extracted.value
        return None


class TransactionDocument(_StoredModel):
    """Reference to a document inside a transaction's append-only list."""
    document_id: str
    document_type: str
    upload_date: datetime
    processed_date: Optional[datetime] = None
    status: str
    role: DocumentRole

    @classmethod
    def from_document(cls, document: ProcessedDocument, role: DocumentRole) -> "TransactionDocument":
        return cls(
            document_id=document.id,
            document_type=document.document_type,
            upload_date=document.upload_date,
            processed_date=document.processed_date,
            status=document.status,
            role=role,
        )


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionStep(_StoredModel):
    """Snapshot of a workflow step as stored on a transaction."""
    step_id: str
    name: str
    description: str
    required_document_types: List[str] = Field(default_factory=list)
    optional_document_types: List[str] = Field(default_factory=list)
    expected_next_step_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_step(cls, step: WorkflowStep) -> "TransactionStep":
        return cls(**step.to_dict())


class WorkflowSuggestion(_StoredModel):
    action: str
    description: str
    priority: SuggestionPriority
    required_document_types: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


class PaymentTerms(_StoredModel):
    type: PaymentTermsType
    percentage: Optional[float] = Field(default=None, ge=0, le=100)
    days_from_proforma: Optional[int] = None
    days_from_delivery: Optional[int] = None
    description: Optional[str] = None


class WorkflowHistoryRecord(_StoredModel):
    timestamp: datetime
    from_step: Optional[str] = None
    to_step: str
    trigger: str
    actor: str = "system"
    reason: Optional[str] = None
    document_id: Optional[str] = None


class BusinessTransaction(_StoredModel):
    """One trading deal tracked across its related documents."""
    id: str
    user_id: str
    status: TransactionStatus
    current_step: TransactionStep
    entities: DocumentEntities = Field(default_factory=DocumentEntities)
    documents: List[TransactionDocument] = Field(default_factory=list)
    payment_terms: Optional[PaymentTerms] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    next_suggested_actions: List[WorkflowSuggestion] = Field(default_factory=list)
    workflow_history: List[WorkflowHistoryRecord] = Field(default_factory=list)
    created_date: datetime = Field(default_factory=utc_now)
    updated_date: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _status_follows_step(self) -> "BusinessTransaction":
        expected = STEP_STATUS_MAPPING.get(self.current_step.step_id)
        if expected is None:
            raise ValueError(f"Unknown workflow step '{self.current_step.step_id}'")
        if self.status != expected:
            raise ValueError(
                f"Status '{self.status}' does not match step '{self.current_step.step_id}' "
                f"(expected '{expected}')"
            )
        return self

    @property
    def document_types(self) -> List[str]:
        return [d.document_type for d in self.documents]

    @property
    def is_completed(self) -> bool:
        return WorkflowEngine.is_terminal(self.current_step.step_id)

    def to_document(self) -> Dict[str, Any]:
        """Serialize for storage."""
        return self.model_dump()
