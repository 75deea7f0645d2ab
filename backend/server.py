"""
Trade Document Hub - Main Server

Entry point. Routes are organized in /routes/, business logic in /services/.
"""

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

from services.workflow_config import (
    MONGO_URL, DB_NAME, TRANSACTIONS_COLLECTION, DOCUMENTS_COLLECTION, LOG_LEVEL
)

# Configure logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import auth, transactions

# ==================== SERVICES ====================
from services.trade_workflow_service import TradeWorkflowService
from services.transaction_store import MongoTransactionStore

mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global mongo_client

    # Startup
    logger.info("Starting Trade Document Hub...")

    # Connect to MongoDB
    mongo_client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
    db = mongo_client[DB_NAME]

    store = MongoTransactionStore(db[TRANSACTIONS_COLLECTION], db[DOCUMENTS_COLLECTION])
    await store.create_indexes()

    # Initialize routers with the workflow service
    transactions.set_dependencies(TradeWorkflowService(store))

    logger.info("Trade Document Hub started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Trade Document Hub...")
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="Trade Document Hub",
    description="Multi-document trade transaction tracking and workflow suggestions",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

# Include route modules
api_router.include_router(auth.router)
api_router.include_router(transactions.router)

# Mount to app
app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Trade Document Hub",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "trade-document-hub"
    }
