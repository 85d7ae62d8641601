"""
Pydantic V2 models for the notebook wire protocol.

Field names follow what the interpreter-side driver sends. Request ids are
exposed as ``request_id`` on every model; the ``current_request_id`` spelling
used by some messages is kept as the wire alias.
"""

from pydantic import BaseModel, ConfigDict, Field


class InboundModel(BaseModel):
    """Base for interpreter -> client payloads; unknown fields are tolerated."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class OutboundModel(BaseModel):
    """Base for client -> interpreter payloads; rejects unknown fields."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ============================================================================
# CLIENT -> INTERPRETER
# ============================================================================


class RunCellParams(OutboundModel):
    """Submit code for execution under ``request_id``."""

    request_id: int = Field(..., ge=1, alias="current_request_id")
    code: str


# ============================================================================
# INTERPRETER -> CLIENT
# ============================================================================


class DisplayParams(InboundModel):
    """Rich output; 0..N per request."""

    mimetype: str
    request_id: int = Field(..., alias="current_request_id")
    data: str


class StreamOutputParams(InboundModel):
    """Plain-text incremental output.

    ``name`` is deliberately a free string: the controller decides what to do
    with anything other than stdout/stderr.
    """

    name: str
    request_id: int = Field(..., alias="current_request_id")
    data: str


class RunCellSucceededParams(InboundModel):
    request_id: int


class ErrorInfo(InboundModel):
    ename: str
    evalue: str
    traceback: str


class RunCellFailedParams(InboundModel):
    request_id: int
    output: ErrorInfo
