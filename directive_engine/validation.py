"""Pydantic-based validation for signal and directive drafts.

The drafts are the Python representation of what callers hand to the Signal
Bus and the Directive Store. Pydantic failures are converted to the engine's
own ``ValidationError`` so callers only deal with one taxonomy.
"""
from __future__ import annotations

import datetime as _dt
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from directive_engine.constants import (
    DOTTED_NAME_PATTERN,
    MAX_ATTEMPTS_CEILING,
    MAX_KEY_LENGTH,
    MAX_NAME_LENGTH,
)
from directive_engine.dedup import normalize_optional_string
from directive_engine.errors import ValidationError
from directive_engine.payloads import ensure_bounded_map

ModelT = TypeVar("ModelT", bound=BaseModel)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        return normalize_optional_string(value)
    return value


class SubjectRef(BaseModel):
    """The ``{type, id}`` pair identifying the entity a signal or directive concerns."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str = Field(min_length=1, max_length=64)
    id: str = Field(min_length=1, max_length=255)

    @field_validator("type", "id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else (str(value) if value is not None else value)


class ActorRef(BaseModel):
    """Who caused a signal (``{"type": "user", "id": "..."}``)."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str = Field(min_length=1, max_length=64)
    id: str = Field(min_length=1, max_length=255)


class SignalDraft(BaseModel):
    """A signal about to be appended to the store."""
    model_config = ConfigDict(extra="forbid")

    tenant: str = Field(min_length=1, max_length=255)
    type: str = Field(pattern=DOTTED_NAME_PATTERN, max_length=MAX_NAME_LENGTH)
    subject: Optional[SubjectRef] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: Optional[str] = Field(default=None, max_length=MAX_KEY_LENGTH)
    correlation_id: Optional[str] = Field(default=None, max_length=255)
    causation_id: Optional[str] = Field(default=None, max_length=255)
    actor: Optional[ActorRef] = None
    source: Optional[str] = Field(default=None, max_length=64)
    occurred_at: Optional[_dt.datetime] = None

    @field_validator("tenant", "type", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("dedupe_key", "correlation_id", "causation_id", "source", mode="before")
    @classmethod
    def _optional(cls, value: Any) -> Any:
        return _blank_to_none(value)


class DirectiveDraft(BaseModel):
    """A directive creation request."""
    model_config = ConfigDict(extra="forbid")

    tenant: str = Field(min_length=1, max_length=255)
    type: str = Field(pattern=DOTTED_NAME_PATTERN, max_length=MAX_NAME_LENGTH)
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str = Field(min_length=1, max_length=MAX_KEY_LENGTH)
    scheduled_at: Optional[_dt.datetime] = None
    max_attempts: int = Field(ge=1, le=MAX_ATTEMPTS_CEILING)
    subject: Optional[SubjectRef] = None
    correlation_id: Optional[str] = Field(default=None, max_length=255)
    requested_by: Optional[str] = Field(default=None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tenant", "type", "idempotency_key", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("correlation_id", "requested_by", mode="before")
    @classmethod
    def _optional(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("scheduled_at")
    @classmethod
    def _aware(cls, value: Optional[_dt.datetime]) -> Optional[_dt.datetime]:
        return as_utc(value) if value is not None else None


def as_utc(value: _dt.datetime) -> _dt.datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC).

    SQLite returns naive datetimes even for ``DateTime(timezone=True)``
    columns, so every comparison goes through this helper.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=_dt.timezone.utc)
    return value.astimezone(_dt.timezone.utc)


def _model_validate(model: Type[ModelT], data: dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        problems = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{p['loc']}: {p['msg']}" for p in problems) or str(exc)
        raise ValidationError(f"invalid {model.__name__}: {summary}", details={"errors": problems}) from exc


def validate_signal(data: dict[str, Any], max_payload_bytes: int) -> SignalDraft:
    """Validate a signal draft; raises ``ValidationError`` on any problem."""
    draft = _model_validate(SignalDraft, data)
    draft.payload = ensure_bounded_map(draft.payload, max_payload_bytes, field="payload")
    draft.metadata = ensure_bounded_map(draft.metadata, max_payload_bytes, field="metadata")
    return draft


def validate_directive(data: dict[str, Any], max_payload_bytes: int) -> DirectiveDraft:
    """Validate a directive draft; raises ``ValidationError`` on any problem."""
    draft = _model_validate(DirectiveDraft, data)
    draft.payload = ensure_bounded_map(draft.payload, max_payload_bytes, field="payload")
    draft.metadata = ensure_bounded_map(draft.metadata, max_payload_bytes, field="metadata")
    return draft


def coerce_subject(value: Any) -> Optional[SubjectRef]:
    """Return a ``SubjectRef`` for a mapping/SubjectRef, or ``None`` if unusable."""
    if value is None:
        return None
    if isinstance(value, SubjectRef):
        return value
    if isinstance(value, dict):
        try:
            return SubjectRef.model_validate({"type": value.get("type"), "id": value.get("id")})
        except PydanticValidationError:
            return None
    return None
