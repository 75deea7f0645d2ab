"""
Trade Document Hub - Entity Extraction

Builds the supplier / trading company / customer / consignee structure of a
processed document. The AI-backed extractor lives outside this service; this
module defines the interface the workflow depends on and a deterministic
implementation that reads the already extracted fields.
"""

import logging
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Dict, List, Mapping

from .transaction_models import CompanyEntity, DocumentEntities, ProcessedDocument

logger = logging.getLogger(__name__)


# Extracted-field keys per entity role and attribute, most specific first
ENTITY_FIELD_KEYS: Mapping[str, Dict[str, List[str]]] = MappingProxyType({
    "supplier": {
        "name": ["supplier_name", "seller_name", "vendor_name"],
        "address": ["supplier_address", "seller_address"],
        "contact": ["supplier_contact", "supplier_phone", "seller_contact"],
        "email": ["supplier_email", "seller_email"],
    },
    "trading_company": {
        "name": ["trading_company_name", "buyer_name"],
        "address": ["trading_company_address", "buyer_address"],
        "contact": ["trading_company_contact", "buyer_contact", "buyer_phone"],
        "email": ["trading_company_email", "buyer_email"],
    },
    "customer": {
        "name": ["customer_name", "end_customer_name"],
        "address": ["customer_address"],
        "contact": ["customer_contact", "customer_phone"],
        "email": ["customer_email"],
    },
    "consignee": {
        "name": ["consignee_name"],
        "address": ["consignee_address"],
        "contact": ["consignee_contact", "consignee_phone"],
        "email": ["consignee_email"],
    },
})


class EntityExtractor(ABC):
    """
    Abstract entity extractor.

    Implementations may call external services and may raise; callers
    decide how to degrade.
    """

    @abstractmethod
    async def extract_entities(self, document: ProcessedDocument) -> DocumentEntities:
        """Return the entity structure for a processed document."""
        pass


class FieldEntityExtractor(EntityExtractor):
    """
    Reads entities from the document's extracted fields.

    An entity snapshot already attached to the document wins over values
    derived from fields; fields only fill the gaps.
    """

    async def extract_entities(self, document: ProcessedDocument) -> DocumentEntities:
        from_fields = DocumentEntities(**{
            role: CompanyEntity(**{
                attribute: document.field_value(keys) or ""
                for attribute, keys in attributes.items()
            })
            for role, attributes in ENTITY_FIELD_KEYS.items()
        })

        if document.entities is None:
            return from_fields

        logger.debug("Merging entity snapshot of document %s with field values", document.id)
        return document.entities.merged_with(from_fields)
