"""Typed template contexts, read models and operation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, Generic, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from clinicops.db.models import NotificationType
from clinicops.errors import InvalidTemplateVariablesError, NotificationError
from clinicops.time_utils import format_display


T = TypeVar("T")

_SCALARS = (str, int, float, bool, date, datetime, time)


def _stringify(value: Any) -> str:
    if isinstance(value, datetime):
        return format_display(value)
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class TemplateContext(BaseModel):
    """Validated variables for one notification kind.

    Known fields are typed per kind; anything else a staff-authored template
    refers to may be passed as an extra scalar value.  The context is turned
    into a plain string map only when handed to the renderer.
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @model_validator(mode="after")
    def _extras_are_scalars(self) -> "TemplateContext":
        for key, value in (self.model_extra or {}).items():
            if not key or not str(key).replace("_", "").replace("-", "").isalnum():
                raise ValueError(f"invalid template variable name: {key!r}")
            if value is not None and not isinstance(value, _SCALARS):
                raise ValueError(f"template variable {key!r} must be a scalar value")
        return self

    def as_variables(self) -> Dict[str, str]:
        """Return the flat map consumed by :func:`template_renderer.render`."""

        variables: Dict[str, str] = {}
        for name, field in type(self).model_fields.items():
            value = getattr(self, name)
            if value is None:
                continue
            text = _stringify(value)
            variables[name] = text
            if field.alias:
                variables[field.alias] = text
        for key, value in (self.model_extra or {}).items():
            if value is not None:
                variables[str(key)] = _stringify(value)
        return variables


class AppointmentContext(TemplateContext):
    patient_name: Optional[str] = None
    doctor_name: Optional[str] = None
    appointment_time: Optional[datetime] = None
    appointment_id: Optional[int] = None


class MedicationContext(TemplateContext):
    patient_name: Optional[str] = None
    doctor_name: Optional[str] = None
    medication_name: Optional[str] = None
    dosage: Optional[str] = None
    instructions: Optional[str] = None
    minutes_before: Optional[int] = Field(default=None, ge=0)


class GeneralContext(TemplateContext):
    patient_name: Optional[str] = None
    doctor_name: Optional[str] = None


CONTEXT_BY_TYPE: Dict[NotificationType, Type[TemplateContext]] = {
    NotificationType.APPOINTMENT_REMINDER: AppointmentContext,
    NotificationType.MEDICATION_REMINDER: MedicationContext,
    NotificationType.GENERAL: GeneralContext,
    NotificationType.SYSTEM_NOTIFICATION: GeneralContext,
}


def _by_alias(model: Type[TemplateContext], values: Mapping[str, Any]) -> Dict[str, Any]:
    # Field names and their camelCase aliases collapse onto the alias.
    normalised: Dict[str, Any] = {}
    for key, value in values.items():
        field = model.model_fields.get(key)
        normalised[field.alias if field is not None and field.alias else key] = value
    return normalised


def build_context(
    notification_type: NotificationType | str,
    variables: Optional[Mapping[str, Any] | TemplateContext] = None,
    defaults: Optional[Mapping[str, Any]] = None,
) -> TemplateContext:
    """Validate *variables* against the context model for *notification_type*.

    *defaults* fill in anything *variables* leaves out.
    """

    kind = NotificationType(notification_type)
    model = CONTEXT_BY_TYPE[kind]
    if isinstance(variables, model) and not defaults:
        return variables
    if isinstance(variables, TemplateContext):
        supplied: Mapping[str, Any] = variables.model_dump(by_alias=True, exclude_none=True)
    else:
        supplied = dict(variables or {})
    payload = _by_alias(model, defaults or {})
    payload.update(_by_alias(model, supplied))
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidTemplateVariablesError(
            f"Invalid variables for {kind.value} template",
            errors=[err.get("msg") for err in exc.errors()],
        ) from exc


class NotificationView(BaseModel):
    """Read model returned to the HTTP layer."""

    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=to_camel,
        from_attributes=True,
    )

    id: int
    recipient_id: int
    sender_id: Optional[int] = None
    type: str
    title: str
    message: str
    priority: str
    status: str
    is_read: bool = False
    related_entity_id: Optional[int] = None
    related_entity_type: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    seen_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    retracted_at: Optional[datetime] = None
    retraction_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    can_retract: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None

    @field_validator("type", "priority", "status", mode="before")
    @classmethod
    def _enum_value(cls, v: Any) -> Any:  # noqa: N805
        return getattr(v, "value", v)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ContactablePatient(BaseModel):
    """A patient a doctor may message, with their most recent appointment."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    patient_id: int
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None
    last_appointment: Optional[datetime] = None
    appointment_status: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Explicit success/failure outcome for request-triggered operations."""

    ok: bool
    value: Optional[T] = None
    error: Optional[NotificationError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: NotificationError) -> "OperationResult[T]":
        return cls(ok=False, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class BatchSendReport:
    """Per-recipient outcome of a batch send; one failure never blocks the rest."""

    sent: List[NotificationView] = field(default_factory=list)
    failures: Dict[int, str] = field(default_factory=dict)


__all__ = [
    "TemplateContext",
    "AppointmentContext",
    "MedicationContext",
    "GeneralContext",
    "CONTEXT_BY_TYPE",
    "build_context",
    "NotificationView",
    "ContactablePatient",
    "OperationResult",
    "BatchSendReport",
]
