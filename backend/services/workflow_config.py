"""
Trade Document Hub - Workflow Configuration

All tunables for transaction correlation, persistence and the HTTP layer.
Values are read once from the environment (a local .env file is honoured).
"""

import os

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "trade_hub")

TRANSACTIONS_COLLECTION = os.environ.get("TRANSACTIONS_COLLECTION", "business_transactions")
DOCUMENTS_COLLECTION = os.environ.get("DOCUMENTS_COLLECTION", "processed_documents")


# =============================================================================
# CORRELATION
# =============================================================================

# Trailing window (days) in which an open transaction can still absorb documents
CORRELATION_WINDOW_DAYS = int(os.environ.get("CORRELATION_WINDOW_DAYS", "7"))

# Currency seeded on new transactions
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")


# =============================================================================
# API
# =============================================================================

JWT_SECRET = os.environ.get("JWT_SECRET", "trade-document-hub-development-secret")
JWT_ALGORITHM = "HS256"
TOKEN_TTL_SECONDS = int(os.environ.get("TOKEN_TTL_SECONDS", "86400"))

# Used when a request carries no bearer token
DEFAULT_USER_ID = os.environ.get("DEFAULT_USER_ID", "demo-user")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
