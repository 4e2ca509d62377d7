from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.v1.api import api_router
from app.api.deps import get_reconciliation_engine
from app.core.config import settings
from app.db.mongo import mongodb
import logging
import os

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Subscription billing and Stripe reconciliation API",
    version="1.0.0",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json"
)


@app.on_event("startup")
async def startup_db_client():
    if settings.SUBSCRIPTION_STORE_BACKEND.lower() != "mongo":
        logger.info(f"Using '{settings.SUBSCRIPTION_STORE_BACKEND}' store; skipping MongoDB connection")
        return
    await mongodb.connect_to_database()
    engine = get_reconciliation_engine()
    for component in (engine.store, engine.ledger):
        ensure_indexes = getattr(component, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()


@app.on_event("shutdown")
async def shutdown_db_client():
    await mongodb.close_database_connection()


# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.FRONTEND_URL,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.PROJECT_NAME} API",
        "docs": "/docs",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
