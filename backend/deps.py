"""Shared FastAPI dependencies used across route modules."""

from fastapi import HTTPException, Request

from database import SessionLocal
from auth import get_current_user_id
from chat_service import TurnService


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_turn_service(request: Request) -> TurnService:
    service = getattr(request.app.state, "turn_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Chat service is starting up")
    return service


__all__ = ["get_db", "get_turn_service", "get_current_user_id"]
