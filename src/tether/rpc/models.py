"""Pydantic v2 models for RPC request/response frames."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tether.errors import ProtocolError

#: Error text used when a peer reports failure without a message.
DEFAULT_RPC_ERROR = "RPC failed"


class RpcRequest(BaseModel):
    """One call on the wire: ``{"id", "method", "params"}``."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, description="Caller-chosen unique request id")
    method: str = Field(min_length=1, description="Handler name")
    params: str = Field(description="Base64 envelope holding the call arguments")


class RpcResponse(BaseModel):
    """One answer on the wire: ``{"id", "ok", "result"?, "error"?}``."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(description="Id of the request being answered")
    ok: bool = Field(description="Whether the call succeeded")
    result: str | None = Field(
        default=None,
        description="Base64 envelope holding the return value",
    )
    error: str | None = Field(
        default=None,
        description="Peer-supplied failure message",
    )

    @model_validator(mode="after")
    def _error_when_failed(self) -> RpcResponse:
        if not self.ok:
            if not self.error:
                self.error = DEFAULT_RPC_ERROR
            self.result = None
        return self

    @classmethod
    def success(cls, request_id: str, result: str) -> RpcResponse:
        return cls(id=request_id, ok=True, result=result)

    @classmethod
    def failure(cls, request_id: str, error: str) -> RpcResponse:
        return cls(id=request_id, ok=False, error=error or DEFAULT_RPC_ERROR)

    def to_wire(self) -> dict[str, Any]:
        """Dict form for framing; absent fields are omitted."""
        return self.model_dump(exclude_none=True)


def parse_request(frame: Any) -> RpcRequest:
    """Validate a decoded frame as a request.

    Raises:
        ProtocolError: The frame is not a well-formed request object.
    """
    try:
        return RpcRequest.model_validate(frame)
    except ValidationError as exc:
        msg = f"Malformed request frame: {exc.error_count()} validation error(s)"
        raise ProtocolError(msg) from exc


def parse_response(frame: Any) -> RpcResponse:
    """Validate a decoded frame as a response.

    Raises:
        ProtocolError: The frame is not a well-formed response object.
    """
    try:
        return RpcResponse.model_validate(frame)
    except ValidationError as exc:
        msg = f"Malformed response frame: {exc.error_count()} validation error(s)"
        raise ProtocolError(msg) from exc
