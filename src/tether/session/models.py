"""Pydantic v2 models for the session RPC methods.

Field names are snake_case in Python and camelCase on the wire; dump with
``by_alias=True`` when building a result.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

#: Permission modes understood by ``claude --permission-mode``.
PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]


class _WireModel(BaseModel):
    """Common config: accept either name form, ignore unknown keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ------------------------------------------------------------------ #
# Params
# ------------------------------------------------------------------ #


class SpawnSessionParams(_WireModel):
    directory: str = Field(min_length=1, description="Working directory for the agent")
    session_id: str | None = Field(
        default=None,
        alias="sessionId",
        description="Caller-chosen session id; generated when omitted",
    )
    permission_mode: PermissionMode | None = Field(
        default=None,
        alias="permissionMode",
        description="Agent permission mode; daemon default when omitted",
    )
    model: str | None = Field(default=None, description="Model override")


class SendMessageParams(_WireModel):
    session_id: str = Field(alias="sessionId")
    text: str


class GetOutputParams(_WireModel):
    session_id: str = Field(alias="sessionId")
    clear: bool = Field(default=False, description="Drain the buffer after reading")


class StopSessionParams(_WireModel):
    session_id: str = Field(alias="sessionId")


# ------------------------------------------------------------------ #
# Results
# ------------------------------------------------------------------ #


class SpawnSessionSuccess(_WireModel):
    type: Literal["success"] = "success"
    session_id: str = Field(alias="sessionId")
    pid: int


class SpawnSessionFailure(_WireModel):
    type: Literal["error"] = "error"
    error_message: str = Field(alias="errorMessage")


SpawnSessionResult = SpawnSessionSuccess | SpawnSessionFailure


class SendMessageResult(_WireModel):
    success: bool
    error: str | None = None


class SessionOutput(_WireModel):
    """One agent event as buffered by the daemon."""

    type: Literal["session-output"] = "session-output"
    data: dict[str, Any] = Field(description="Raw stream-json event from the agent")
    timestamp: int = Field(description="Arrival time, ms since the epoch")


class GetOutputResult(_WireModel):
    messages: list[SessionOutput] = Field(default_factory=list)


class StopSessionResult(_WireModel):
    success: bool


class SessionSummary(_WireModel):
    session_id: str = Field(alias="sessionId")
    pid: int
    created_at: int = Field(alias="createdAt", description="ms since the epoch")


class SessionRecord(SessionSummary):
    """Session entry mirrored to the discovery record store."""

    directory: str


class SessionState(_WireModel):
    sessions: list[SessionRecord] = Field(default_factory=list)
    updated_at: int = Field(alias="updatedAt", description="ms since the epoch")


class PingResult(_WireModel):
    pong: Literal[True] = True
    timestamp: int
