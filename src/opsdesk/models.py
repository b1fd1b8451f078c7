# models.py
# Data contracts for the opsdesk agent loop.
# No business logic lives here: pure schema and validation.

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class Principal(BaseModel):
    """The authenticated actor a request runs on behalf of."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str
    permissions: frozenset[str] = Field(default_factory=frozenset)

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    def can(self, permission: str | None) -> bool:
        return permission is None or permission in self.permissions


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One chat turn. Only user and assistant turns are accepted from callers."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


class Attachment(BaseModel):
    mime_type: str = Field(..., description="File MIME type.")
    data: str = Field(default="", description="Base64 encoded file data.")


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class Success(BaseModel):
    """Operation completed. `payload` is machine-usable, `message` is for display."""

    model_config = ConfigDict(frozen=True)

    success: Literal[True] = True
    payload: dict[str, Any] = Field(default_factory=dict)
    message: str


class Failure(BaseModel):
    """Operation refused or failed. `error` is a short classification."""

    model_config = ConfigDict(frozen=True)

    success: Literal[False] = False
    error: str
    message: str


Outcome = Union[Success, Failure]


# ---------------------------------------------------------------------------
# Model capability
# ---------------------------------------------------------------------------


class OperationRequest(BaseModel):
    """A single operation invocation requested by the model.

    `parameters` is None when the model sent arguments that could not be
    decoded into an object.
    """

    name: str
    parameters: dict[str, Any] | None = Field(default_factory=dict)


class ModelResponse(BaseModel):
    text: str = ""
    requested_operations: list[OperationRequest] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Loop bookkeeping
# ---------------------------------------------------------------------------


class LoopState(str, Enum):
    AWAITING_MODEL = "AWAITING_MODEL"
    MODEL_REQUESTS_OPERATIONS = "MODEL_REQUESTS_OPERATIONS"
    EXECUTING = "EXECUTING"
    MODEL_RETURNS_TEXT = "MODEL_RETURNS_TEXT"
    DONE = "DONE"
    EXHAUSTED = "EXHAUSTED"
    FAILED = "FAILED"


class TraceRecord(BaseModel):
    """Structured trace entry emitted at every loop state transition."""

    request_id: str
    round: int
    state: LoopState
    operation: str | None = None
    outcome: Outcome | None = None
    detail: str = ""
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AgentResult(BaseModel):
    request_id: str
    text: str
    state: LoopState
    rounds: int
    trace: list[TraceRecord] = Field(default_factory=list)
