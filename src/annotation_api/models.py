from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, EmailStr, Field


class AnnotationStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Progress steps after which no further events follow for that run
TERMINAL_STEPS = frozenset({"completed", "failed", "tts_completed", "tts_failed"})


class UserRole(str, Enum):
    USER = "user"
    CONTENT = "content"


class Capability(str, Enum):
    VIEW_ANNOTATIONS = "view_annotations"
    MANAGE_ANNOTATIONS = "manage_annotations"


ROLE_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.USER: frozenset({Capability.VIEW_ANNOTATIONS}),
    UserRole.CONTENT: frozenset({Capability.VIEW_ANNOTATIONS, Capability.MANAGE_ANNOTATIONS}),
}


def has_capability(role: UserRole, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


class AnnotationResponse(BaseModel):
    id: str
    user_id: str
    title: str
    image: Optional[str] = None
    source_type: str
    annotation: str
    genre: str
    tts_url: Optional[str] = None
    status: AnnotationStatus
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AnnotationUpdateRequest(BaseModel):
    """
    JSON body for PATCH /annotations/{id}.

    Presence matters: a field left out of the body is untouched, a field sent
    as an empty string is set to the empty string. Explicit nulls are
    rejected when the patch is built (see annotation_manager.AnnotationPatch).
    """

    title: Optional[str] = None
    image: Optional[str] = None
    annotation: Optional[str] = None
    genre: Optional[str] = None


class Pagination(BaseModel):
    limit: int
    offset: int
    count: int


class AnnotationPage(BaseModel):
    annotations: List[AnnotationResponse]
    pagination: Pagination


class AnnotationStats(BaseModel):
    total: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class ProgressEvent(BaseModel):
    annotation_id: str
    status: AnnotationStatus
    step: str
    progress: int = Field(ge=0, le=100)
    message: str
    error: Optional[str] = None
    timestamp: datetime

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: UserRole
    created_at: datetime
    updated_at: datetime


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


class TokenClaims(BaseModel):
    user_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[str] = None
