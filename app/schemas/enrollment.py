from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.enrollment_state import CANONICAL_FIELDS, CanonicalField

IneSide = Literal["front", "back"]


class IneFrontFields(BaseModel):
    """Fields read from the front of the ID card. Unreadable fields are None."""

    model_config = ConfigDict(extra="ignore")

    nombre: Optional[str] = None
    apellidoPaterno: Optional[str] = None
    apellidoMaterno: Optional[str] = None
    fechaNacimiento: Optional[str] = None
    curp: Optional[str] = None


class IneBackFields(BaseModel):
    """Machine-readable zone lines 2 and 3 from the back of the ID card."""

    model_config = ConfigDict(extra="ignore")

    linea2: Optional[str] = None
    linea3: Optional[str] = None


class ExtractionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    side: IneSide
    fields: IneFrontFields | IneBackFields


class ValidationResult(BaseModel):
    match: bool
    reason: str = ""


class ScheduleResult(BaseModel):
    dateTime: Optional[str] = None

    @field_validator("dateTime")
    @classmethod
    def _check_format(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        datetime.strptime(value, "%d/%m/%Y %H:%M")
        return value


class AssistantReply(BaseModel):
    """Raw shape the data extraction prompt must return."""

    action: Literal["validate_data"] = "validate_data"
    data: dict[str, Any] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)


class AssistantResult(BaseModel):
    data: dict[str, str] = Field(default_factory=dict)
    missing: list[CanonicalField] = Field(default_factory=list)

    @field_validator("missing")
    @classmethod
    def _canonical_order(cls, value: list[CanonicalField]) -> list[CanonicalField]:
        present = set(value)
        return [f for f in CANONICAL_FIELDS if f in present]


class PaymentRecord(BaseModel):
    method: Literal["transferencia", "tarjeta", "caja"]
    status: str
    scheduledAt: Optional[str] = None
    proofImage: Optional[str] = None
    receivedAt: Optional[str] = None


class FinalSnapshot(BaseModel):
    """Immutable copy of an enrollment taken when it reaches completed."""

    model_config = ConfigDict(frozen=True)

    id: str
    platform: str
    inscriptionData: dict[str, str]
    payment: PaymentRecord
    status: Literal["completed"] = "completed"
    createdAt: datetime
