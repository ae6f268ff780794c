"""FastAPI REST API server for the reminder core.

Conversational endpoints (``/converse``, ``/search``) plus direct reminder
CRUD for the mobile client. Dates are ``YYYY-MM-DD`` and times ``HH:mm`` on the
wire; Pydantic parses and validates both.
"""

from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import crud
import database
import schemas
import services
from agent import ConversationDriver
from config import settings
from database import OutboxStatusEnum
from errors import (
    InfrastructureError, InvalidConversationError, IterationExhaustedError,
    ProviderTimeoutError, ReminderCoreError,
)
from logger_config import setup_logger
from retrieval import HybridRetrievalEngine
from store import EmbeddingStore
from temporal import reference_date

logger = setup_logger(__name__, 'api.log')

app = FastAPI(
    title="Reminder Core API",
    description="Conversational reminders: agent loop, hybrid search and reminder CRUD",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

origins = [
    "http://localhost:8081",      # Expo dev server
    "http://localhost:19006",     # Expo web
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def _status_for(exc: ReminderCoreError) -> int:
    if isinstance(exc, ProviderTimeoutError):
        return 504
    if isinstance(exc, InfrastructureError):
        return 503
    if isinstance(exc, InvalidConversationError):
        return 422
    return 500


@app.exception_handler(ReminderCoreError)
async def reminder_core_error_handler(request: Request, exc: ReminderCoreError):
    status_code = _status_for(exc)
    if isinstance(exc, IterationExhaustedError):
        logger.warning(f"{request.url.path}: {exc}")
    else:
        logger.error(f"{request.url.path} failed with {exc.code}: {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"{request.url.path} database error: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "store_unavailable", "detail": "Reminder store unavailable", "retryable": True}
    )


@app.get("/")
def root():
    """Root endpoint - service information"""
    return {
        "service": "Reminder Core API",
        "version": "1.0.0",
        "status": "healthy",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "converse": "/converse",
            "search": "/search",
            "reminders": "/reminders"
        }
    }


@app.get("/health")
def health_check(db: Session = Depends(database.get_db)):
    """Health check endpoint for monitoring, with indexer backlog."""
    return {
        "status": "healthy",
        "service": "reminder_core",
        "database": settings.DATABASE_URL.split("://")[0],
        "embedding_outbox": {
            "pending": crud.count_events(db, OutboxStatusEnum.PENDING),
            "failed": crud.count_events(db, OutboxStatusEnum.FAILED)
        }
    }


# ---------------------------------------------------------------------------
# Conversation and search
# ---------------------------------------------------------------------------

@app.post("/converse", response_model=schemas.ConverseResponse)
async def converse(
    request: schemas.ConverseRequest,
    driver: ConversationDriver = Depends(services.get_conversation_driver)
):
    """Run the agent loop for one user utterance.

    Request body example:
    ```json
    {
        "query": "remind me to call mom tomorrow at 6pm",
        "owner_id": "user-123",
        "client_date": "2025-06-11"
    }
    ```
    """
    return await driver.converse(
        request.query,
        request.owner_id,
        client_date=request.client_date,
        conversation_history=request.conversation_history
    )


@app.post("/search", response_model=schemas.SearchResponse)
async def search(
    request: schemas.SearchRequest,
    engine: HybridRetrievalEngine = Depends(services.get_retrieval_engine)
):
    """Hybrid search over a user's reminders.

    ``start_date``/``end_date`` (or the single-day ``target_date``) override
    date extraction from the query.
    """
    start_date = request.start_date or request.target_date
    end_date = request.end_date if request.start_date else request.target_date
    return await engine.search(
        request.query,
        request.owner_id,
        start_date=start_date,
        end_date=end_date,
        reference_date=reference_date(request.client_date)
    )


@app.post("/admin/embeddings/backfill/{owner_id}")
async def backfill_embeddings(
    owner_id: str,
    embedding_store: EmbeddingStore = Depends(services.get_embedding_store)
):
    """Queue an embedding refresh for every reminder of a user."""
    queued = await embedding_store.enqueue_backfill(owner_id)
    logger.info(f"Queued {queued} embedding refresh(es) for {owner_id}")
    return {"owner_id": owner_id, "queued": queued}


# ---------------------------------------------------------------------------
# Direct reminder CRUD
# ---------------------------------------------------------------------------

@app.post("/reminders", response_model=schemas.ReminderResponse, status_code=201)
def create_reminder(
    reminder: schemas.ReminderCreate,
    db: Session = Depends(database.get_db)
):
    """Create a new reminder.

    Request body example:
    ```json
    {
        "owner_id": "user-123",
        "title": "Dentist appointment",
        "date": "2025-06-12",
        "time": "15:30",
        "tag_name": "Health"
    }
    ```

    Tag/priority names that match nothing, and raw ids the caller does not
    own, are dropped and reported in ``warnings``.
    """
    reminder_data = reminder.model_dump(exclude={"tag_name", "priority_name"})
    checked, warnings = crud.check_taxonomy_ids(db, reminder.owner_id, reminder.tag_id, reminder.priority_id)
    reminder_data.update(checked)
    # names win over raw ids
    ids, name_warnings = crud.resolve_taxonomy(db, reminder.owner_id, reminder.tag_name, reminder.priority_name)
    reminder_data.update(ids)
    created = crud.create_reminder(db, reminder_data)
    return schemas.ReminderResponse.model_validate(created).model_copy(update={"warnings": warnings + name_warnings})


@app.get("/reminders", response_model=List[schemas.ReminderResponse])
def list_reminders(
    owner_id: str = Query(..., description="Owning user ID"),
    start_date: Optional[date] = Query(None, description="First day (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Last day (YYYY-MM-DD), defaults to start_date"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of results without a date filter"),
    db: Session = Depends(database.get_db)
):
    """List a user's reminders, optionally restricted to a date range."""
    if start_date:
        end = end_date or start_date
        if end < start_date:
            raise HTTPException(status_code=422, detail="end_date must not be before start_date")
        return crud.list_by_date_range(db, owner_id, start_date, end)
    return crud.get_reminders_by_owner(db, owner_id, limit)


@app.get("/reminders/{reminder_id}", response_model=schemas.ReminderResponse)
def get_reminder(
    reminder_id: str,
    owner_id: str = Query(..., description="Owning user ID"),
    db: Session = Depends(database.get_db)
):
    reminder = crud.get_reminder(db, reminder_id, owner_id)
    if not reminder:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


@app.patch("/reminders/{reminder_id}", response_model=schemas.ReminderResponse)
def update_reminder(
    reminder_id: str,
    updates: schemas.ReminderUpdate,
    owner_id: str = Query(..., description="Owning user ID"),
    db: Session = Depends(database.get_db)
):
    """Update an existing reminder.

    Only provided fields will be updated. Setting ``repeat`` to ``none``
    clears ``repeat_until``.
    """
    if not crud.get_reminder(db, reminder_id, owner_id):
        raise HTTPException(status_code=404, detail="Reminder not found")

    update_dict = updates.model_dump(exclude_unset=True, exclude={"tag_name", "priority_name"})
    checked, warnings = crud.check_taxonomy_ids(db, owner_id, updates.tag_id, updates.priority_id)
    update_dict.update(checked)
    ids, name_warnings = crud.resolve_taxonomy(db, owner_id, updates.tag_name, updates.priority_name)
    update_dict.update(ids)

    reminder = crud.update_reminder(db, reminder_id, owner_id, update_dict)
    return schemas.ReminderResponse.model_validate(reminder).model_copy(update={"warnings": warnings + name_warnings})


@app.delete("/reminders/{reminder_id}", status_code=200)
def delete_reminder(
    reminder_id: str,
    owner_id: str = Query(..., description="Owning user ID"),
    db: Session = Depends(database.get_db)
):
    success = crud.delete_reminder(db, reminder_id, owner_id)
    if not success:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return {"message": "Reminder deleted successfully", "reminder_id": reminder_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
