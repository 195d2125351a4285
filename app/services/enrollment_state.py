from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CanonicalField(str, Enum):
    FULL_NAME = "nombreCompleto"
    BIRTH_DATE = "fechaNacimiento"
    CURP = "curp"
    EMAIL = "email"
    PHONE = "telefono"
    EDUCATION_LEVEL = "nivelEducacion"
    PRIOR_SCHOOL = "escuelaProcedencia"
    EMERGENCY_CONTACT_1 = "contactoEmergencia1"
    EMERGENCY_CONTACT_2 = "contactoEmergencia2"
    ENROLLMENT_LEVEL = "nivelInscripcion"


# Definition order of CanonicalField is the canonical order.
CANONICAL_FIELDS: tuple[CanonicalField, ...] = tuple(CanonicalField)

INE_FRONT_IMAGE = "ineFrontImage"
INE_BACK_IMAGE = "ineBackImage"
IMAGE_FIELDS = (INE_FRONT_IMAGE, INE_BACK_IMAGE)
ALLOWED_DATA_KEYS = frozenset(f.value for f in CANONICAL_FIELDS) | frozenset(IMAGE_FIELDS)

FIELD_QUESTIONS = {
    CanonicalField.FULL_NAME: "¿Cuál es tu nombre completo?",
    CanonicalField.BIRTH_DATE: "¿Cuál es tu fecha de nacimiento (DD/MM/AAAA)?",
    CanonicalField.CURP: "¿Cuál es tu CURP?",
    CanonicalField.EMAIL: "¿Cuál es tu correo electrónico?",
    CanonicalField.PHONE: "¿Cuál es tu número de teléfono con WhatsApp?",
    CanonicalField.EDUCATION_LEVEL: "¿Cuál es tu último grado de estudios terminado?",
    CanonicalField.PRIOR_SCHOOL: "¿De qué escuela egresaste?",
    CanonicalField.EMERGENCY_CONTACT_1: "Por favor, dame el nombre y teléfono de tu primer contacto de emergencia.",
    CanonicalField.EMERGENCY_CONTACT_2: "Gracias, ahora el nombre y teléfono de tu segundo contacto de emergencia.",
    CanonicalField.ENROLLMENT_LEVEL: (
        "Finalmente, ¿a qué nivel de estudios te inscribes (Prepa o Licenciatura)? "
        "Si es presencial, indica el horario."
    ),
}

COLLECTING_PREFIX = "collecting_"


class EnrollmentStatus(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_ALL_DATA = "awaiting_all_data"
    VALIDATING_DATA = "validating_data"
    COLLECTING = "collecting"  # persisted as collecting_<field>
    AWAITING_INE_FRONT = "awaiting_ine_front"
    AWAITING_INE_BACK = "awaiting_ine_back"
    AWAITING_PAYMENT_METHOD = "awaiting_payment_method"
    PENDING_IMPLEMENTATION = "pending_implementation"
    AWAITING_PAYMENT_PROOF = "awaiting_payment_proof"
    AWAITING_CAJA_SCHEDULE = "awaiting_caja_schedule"
    COMPLETED = "completed"


_S = EnrollmentStatus

VALID_TRANSITIONS = {
    _S.NOT_STARTED: [_S.AWAITING_ALL_DATA],
    _S.AWAITING_ALL_DATA: [_S.VALIDATING_DATA],
    _S.VALIDATING_DATA: [_S.COLLECTING, _S.AWAITING_INE_FRONT],
    _S.COLLECTING: [_S.COLLECTING, _S.AWAITING_INE_FRONT],
    _S.AWAITING_INE_FRONT: [_S.AWAITING_INE_BACK],
    _S.AWAITING_INE_BACK: [_S.AWAITING_PAYMENT_METHOD],
    _S.AWAITING_PAYMENT_METHOD: [_S.AWAITING_PAYMENT_PROOF, _S.PENDING_IMPLEMENTATION, _S.AWAITING_CAJA_SCHEDULE],
    _S.PENDING_IMPLEMENTATION: [_S.AWAITING_PAYMENT_PROOF, _S.AWAITING_CAJA_SCHEDULE],
    _S.AWAITING_PAYMENT_PROOF: [_S.COMPLETED],
    _S.AWAITING_CAJA_SCHEDULE: [_S.COMPLETED],
    _S.COMPLETED: [],
}

# Position in the flow; transitions never decrease it.
STATUS_RANK = {
    _S.NOT_STARTED: 0,
    _S.AWAITING_ALL_DATA: 1,
    _S.VALIDATING_DATA: 2,
    _S.COLLECTING: 3,
    _S.AWAITING_INE_FRONT: 4,
    _S.AWAITING_INE_BACK: 5,
    _S.AWAITING_PAYMENT_METHOD: 6,
    _S.PENDING_IMPLEMENTATION: 7,
    _S.AWAITING_PAYMENT_PROOF: 7,
    _S.AWAITING_CAJA_SCHEDULE: 7,
    _S.COMPLETED: 8,
}

# Statuses the enrollment state machine answers for.
ACTIVE_STATUSES = frozenset(s for s in EnrollmentStatus if s not in (_S.NOT_STARTED, _S.COMPLETED))


@dataclass(frozen=True)
class EnrollmentState:
    """Current step of the enrollment flow.

    ``field`` is set only for ``COLLECTING`` and names the canonical field the
    flow is waiting on.
    """

    status: EnrollmentStatus
    field: Optional[CanonicalField] = None

    def __post_init__(self):
        if (self.status is EnrollmentStatus.COLLECTING) != (self.field is not None):
            raise ValueError(f"field must be set exactly for collecting states, got {self.status}/{self.field}")

    @property
    def tag(self) -> str:
        """Serialized form stored in ``inscription_status``."""
        if self.field is not None:
            return f"{COLLECTING_PREFIX}{self.field.value}"
        return self.status.value

    @property
    def rank(self) -> int:
        return STATUS_RANK[self.status]

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @classmethod
    def parse(cls, raw: Optional[str]) -> "EnrollmentState":
        """Parse a stored status tag. Unknown or empty values map to not_started."""
        raw = (raw or "").strip()
        if raw.startswith(COLLECTING_PREFIX):
            try:
                return collecting(CanonicalField(raw[len(COLLECTING_PREFIX) :]))
            except ValueError:
                return NOT_STARTED
        try:
            status = EnrollmentStatus(raw)
        except ValueError:
            return NOT_STARTED
        if status is EnrollmentStatus.COLLECTING:
            return NOT_STARTED
        return cls(status)

    def __str__(self) -> str:
        return self.tag


def collecting(field: CanonicalField) -> EnrollmentState:
    """Waiting on the user's answer for ``field``."""
    return EnrollmentState(EnrollmentStatus.COLLECTING, CanonicalField(field))


NOT_STARTED = EnrollmentState(EnrollmentStatus.NOT_STARTED)
AWAITING_ALL_DATA = EnrollmentState(EnrollmentStatus.AWAITING_ALL_DATA)
VALIDATING_DATA = EnrollmentState(EnrollmentStatus.VALIDATING_DATA)
AWAITING_INE_FRONT = EnrollmentState(EnrollmentStatus.AWAITING_INE_FRONT)
AWAITING_INE_BACK = EnrollmentState(EnrollmentStatus.AWAITING_INE_BACK)
AWAITING_PAYMENT_METHOD = EnrollmentState(EnrollmentStatus.AWAITING_PAYMENT_METHOD)
PENDING_IMPLEMENTATION = EnrollmentState(EnrollmentStatus.PENDING_IMPLEMENTATION)
AWAITING_PAYMENT_PROOF = EnrollmentState(EnrollmentStatus.AWAITING_PAYMENT_PROOF)
AWAITING_CAJA_SCHEDULE = EnrollmentState(EnrollmentStatus.AWAITING_CAJA_SCHEDULE)
COMPLETED = EnrollmentState(EnrollmentStatus.COMPLETED)


class InvalidTransitionError(Exception):
    def __init__(self, from_state: EnrollmentState, to_state: EnrollmentState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.tag} -> {to_state.tag}")


def can_transition(from_state: EnrollmentState, to_state: EnrollmentState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state.status, [])
    if to_state.status not in allowed:
        return False
    return to_state.rank >= from_state.rank


def transition(from_state: EnrollmentState, to_state: EnrollmentState) -> EnrollmentState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def first_missing(missing: list[CanonicalField]) -> Optional[CanonicalField]:
    """Pick the field to ask next: the earliest missing one in canonical order."""
    for field in CANONICAL_FIELDS:
        if field in missing:
            return field
    return None


def state_after_collection(missing: list[CanonicalField]) -> EnrollmentState:
    """Next state once the assistant reports what is still missing."""
    next_field = first_missing(missing)
    if next_field is None:
        return AWAITING_INE_FRONT
    return collecting(next_field)
