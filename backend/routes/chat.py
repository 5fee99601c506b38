"""Chat turn routes: send a message, inspect turn telemetry."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chat_service import TurnService
from deps import get_current_user_id, get_db, get_turn_service
from schemas import ChatSendRequest, ChatSendResponse
from telemetry import read_turn_telemetry_summary

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("/send", response_model=ChatSendResponse)
async def send_message(
    payload: ChatSendRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: TurnService = Depends(get_turn_service),
):
    result = await service.send_turn(db, payload.session_id, user_id, payload.message)
    return result.model_dump(exclude={"message_id"})


@router.get("/telemetry")
async def get_turn_telemetry(hours: int = 24, limit: int = 6, user_id: str = Depends(get_current_user_id)):
    """Counters, rejection reasons and recent events for the turn pipeline."""
    return read_turn_telemetry_summary(hours=hours, limit=limit)
