from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Any
from datetime import datetime

# Session Schemas
class SessionCreate(BaseModel):
    character_id: str
    title: Optional[str] = Field(default=None, max_length=255)
    mirror_to_owner: bool = True

class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    character_id: str
    title: Optional[str] = None
    mirror_session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class SessionUpdate(BaseModel):
    title: str = Field(..., max_length=255)

# Turn Schemas
class ChatSendRequest(BaseModel):
    session_id: str
    message: str = Field(..., max_length=8000)

class SessionSummaryResponse(BaseModel):
    id: str
    title: Optional[str] = None
    updated_at: Optional[datetime] = None

class CharacterSummaryResponse(BaseModel):
    id: str
    name: str
    avatar_url: Optional[str] = None

class SessionDetailResponse(SessionResponse):
    character: Optional[CharacterSummaryResponse] = None

class SessionListResponse(BaseModel):
    sessions: list[SessionDetailResponse]
    results: int

class ChatSendResponse(BaseModel):
    reply_text: str
    is_nsfw: bool
    session: SessionSummaryResponse
    character: CharacterSummaryResponse
    replayed: bool = False

# Message Schemas
class MessageResponse(BaseModel):
    id: int
    session_id: str
    role: str
    content: str
    order_index: int
    is_nsfw: bool = False
    metadata: dict[str, Any] = {}
    created_at: Optional[str] = None

class MessagePageResponse(BaseModel):
    messages: list[MessageResponse]
    total: int
    limit: int
    offset: int
    has_more: bool
