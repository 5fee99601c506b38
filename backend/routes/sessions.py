"""Chat session routes: create (with owner mirror), list, read, rename, delete and paginated history."""

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from chat_service import (
    create_session,
    delete_session,
    get_session,
    list_messages,
    list_user_sessions,
    session_to_dict,
    update_session,
)
from deps import get_current_user_id, get_db
from schemas import (
    MessagePageResponse,
    SessionCreate,
    SessionDetailResponse,
    SessionListResponse,
    SessionResponse,
    SessionUpdate,
)

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_chat_session(
    payload: SessionCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    chat_session = create_session(
        db,
        user_id=user_id,
        character_id=payload.character_id,
        title=payload.title,
        mirror_to_owner=payload.mirror_to_owner,
    )
    return session_to_dict(chat_session)


@router.get("/sessions", response_model=SessionListResponse)
async def list_chat_sessions(
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    sessions = [session_to_dict(s, include_character=True) for s in list_user_sessions(db, user_id, limit=limit)]
    return {"sessions": sessions, "results": len(sessions)}


@router.get("/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_chat_session(
    session_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return session_to_dict(get_session(db, session_id, user_id), include_character=True)


@router.patch("/sessions/{session_id}", response_model=SessionResponse)
async def rename_chat_session(
    session_id: str,
    payload: SessionUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return session_to_dict(update_session(db, session_id, user_id, payload.title))


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat_session(
    session_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    delete_session(db, session_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/sessions/{session_id}/messages", response_model=MessagePageResponse)
async def get_session_messages(
    session_id: str,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Newest first."""
    page = list_messages(db, session_id, user_id, limit=limit, offset=offset)
    return {
        "messages": page.items,
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "has_more": page.has_more,
    }
