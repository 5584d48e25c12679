"""Wire schema of the terminal WebSocket.

Frames are JSON text objects selected by their ``type`` field. Inbound frames
are validated into a closed set of pydantic models before anything touches
session state; outbound frames are built from models and serialized with
camelCase aliases.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from webshell.common import settings
from webshell.common.catalog import DEFAULT_CATALOG, EnvironmentCatalog
from webshell.common.errors import ValidationError

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008


@dataclass(frozen=True)
class ValidationLimits:
    min_cols: int = settings.MIN_COLS
    max_cols: int = settings.MAX_COLS
    min_rows: int = settings.MIN_ROWS
    max_rows: int = settings.MAX_ROWS
    max_input_size: int = settings.MAX_INPUT_SIZE
    shells: tuple[str, ...] = settings.ALLOWED_SHELLS
    catalog: EnvironmentCatalog = field(default=DEFAULT_CATALOG, compare=False)


DEFAULT_LIMITS = ValidationLimits()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _limits(info: ValidationInfo) -> ValidationLimits:
    return (info.context or {}).get("limits", DEFAULT_LIMITS)


def coerce_dimension(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("Cols and rows must be numbers")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError("Cols and rows must be integers")
    return int(value)


def validate_geometry(cols: Any, rows: Any, limits: ValidationLimits = DEFAULT_LIMITS) -> tuple[int, int]:
    """Check terminal dimensions, raising ValidationError on the first failure."""
    try:
        cols, rows = coerce_dimension(cols), coerce_dimension(rows)
    except ValueError as e:
        raise ValidationError(str(e), field="cols") from e
    if not limits.min_cols <= cols <= limits.max_cols:
        raise ValidationError(
            f"Cols must be between {limits.min_cols} and {limits.max_cols}", field="cols"
        )
    if not limits.min_rows <= rows <= limits.max_rows:
        raise ValidationError(
            f"Rows must be between {limits.min_rows} and {limits.max_rows}", field="rows"
        )
    return cols, rows


def check_cols(value: int, limits: ValidationLimits) -> int:
    if not limits.min_cols <= value <= limits.max_cols:
        raise ValueError(f"Cols must be between {limits.min_cols} and {limits.max_cols}")
    return value


def check_rows(value: int, limits: ValidationLimits) -> int:
    if not limits.min_rows <= value <= limits.max_rows:
        raise ValueError(f"Rows must be between {limits.min_rows} and {limits.max_rows}")
    return value


# -----------------------------------------------------------------------------
# Inbound
# -----------------------------------------------------------------------------


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    session_id: str | None = Field(default=None, alias="sessionId")


class CreateSessionMessage(InboundMessage):
    type: Literal["create-session"] = "create-session"
    cols: int = 80
    rows: int = 24
    shell: str = "bash"
    environment: str = "default"

    @field_validator("cols", "rows", mode="before")
    @classmethod
    def dimension_is_integer(cls, value: Any) -> int:
        return coerce_dimension(value)

    @field_validator("cols")
    @classmethod
    def cols_in_bounds(cls, value: int, info: ValidationInfo) -> int:
        return check_cols(value, _limits(info))

    @field_validator("rows")
    @classmethod
    def rows_in_bounds(cls, value: int, info: ValidationInfo) -> int:
        return check_rows(value, _limits(info))

    @field_validator("shell", mode="before")
    @classmethod
    def shell_allowed(cls, value: Any, info: ValidationInfo) -> str:
        if not isinstance(value, str):
            raise ValueError("Shell must be a string")
        shells = _limits(info).shells
        shell = value.lower().strip()
        if shell not in shells:
            raise ValueError(f"Shell must be one of: {', '.join(shells)}")
        return shell

    @field_validator("environment", mode="before")
    @classmethod
    def environment_known(cls, value: Any, info: ValidationInfo) -> str:
        if not isinstance(value, str):
            raise ValueError("Environment must be a string")
        catalog = _limits(info).catalog
        environment = value.lower().strip()
        if environment not in catalog:
            raise ValueError(f"Environment must be one of: {', '.join(catalog.names)}")
        return environment


class InputMessage(InboundMessage):
    type: Literal["input"] = "input"
    data: str = Field(default=None, validate_default=True)

    @field_validator("data", mode="before")
    @classmethod
    def data_within_limit(cls, value: Any, info: ValidationInfo) -> str:
        if not isinstance(value, str):
            raise ValueError("Input data must be a string")
        max_size = _limits(info).max_input_size
        size = len(value.encode("utf-8"))
        if size > max_size:
            logger.warning(f"Oversized input rejected: {size} bytes (max {max_size})")
            raise ValueError(f"Input data exceeds maximum size of {max_size} bytes")
        return value


class ResizeMessage(InboundMessage):
    type: Literal["resize"] = "resize"
    cols: int = Field(default=None, validate_default=True)
    rows: int = Field(default=None, validate_default=True)

    @field_validator("cols", "rows", mode="before")
    @classmethod
    def dimension_is_integer(cls, value: Any) -> int:
        return coerce_dimension(value)

    @field_validator("cols")
    @classmethod
    def cols_in_bounds(cls, value: int, info: ValidationInfo) -> int:
        return check_cols(value, _limits(info))

    @field_validator("rows")
    @classmethod
    def rows_in_bounds(cls, value: int, info: ValidationInfo) -> int:
        return check_rows(value, _limits(info))


class PingMessage(InboundMessage):
    type: Literal["ping"] = "ping"


INBOUND_MODELS: dict[str, type[InboundMessage]] = {
    "create-session": CreateSessionMessage,
    "input": InputMessage,
    "resize": ResizeMessage,
    "ping": PingMessage,
}


def as_validation_error(error: pydantic.ValidationError) -> ValidationError:
    """Reduce a pydantic error to its first failure."""
    first = error.errors()[0]
    field_name = ".".join(str(part) for part in first["loc"]) or None
    cause = (first.get("ctx") or {}).get("error")
    if cause is not None:
        return ValidationError(str(cause), field=field_name)
    return ValidationError(f"{field_name}: {first['msg']}", field=field_name)


def parse_inbound(raw: str | bytes, limits: ValidationLimits = DEFAULT_LIMITS) -> InboundMessage | None:
    """Validate one inbound frame.

    Returns None for well-formed frames of an unknown type (they are logged and
    ignored). Raises ValidationError for everything else that is not valid.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
        raise ValidationError("Message must be valid JSON") from e

    if not isinstance(payload, dict):
        raise ValidationError("Message must be a valid object")

    kind = payload.get("type")
    if not isinstance(kind, str):
        raise ValidationError("Message must have a valid type field", field="type")

    model = INBOUND_MODELS.get(kind)
    if model is None:
        logger.warning(f"Ignoring unknown message type: {kind[:64]!r}")
        return None

    try:
        return model.model_validate(payload, context={"limits": limits})
    except pydantic.ValidationError as e:
        error = as_validation_error(e)
        logger.warning(f"Message validation failed: type={kind} field={error.field} error={error}")
        raise error from e


# -----------------------------------------------------------------------------
# Outbound
# -----------------------------------------------------------------------------


class OutboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    session_id: str | None = Field(default=None, alias="sessionId")
    timestamp: str | None = Field(default_factory=now_iso)

    def to_frame(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SessionCreated(OutboundMessage):
    type: Literal["session-created"] = "session-created"
    session_id: str = Field(alias="sessionId")
    environment: str | None = None
    shell: str | None = None
    cols: int | None = None
    rows: int | None = None


class Output(OutboundMessage):
    type: Literal["output"] = "output"
    data: str
    timestamp: str | None = None


class ErrorMessage(OutboundMessage):
    type: Literal["error"] = "error"
    error: str


class Pong(OutboundMessage):
    type: Literal["pong"] = "pong"


class TerminationNotice(OutboundMessage):
    type: Literal["termination-notice"] = "termination-notice"
    reason: str


class SessionEnded(OutboundMessage):
    type: Literal["session-ended"] = "session-ended"
    reason: str | None = None
