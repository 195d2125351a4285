from app.services.enrollment_state import (
    EnrollmentState,
    EnrollmentStatus,
    InvalidTransitionError,
    can_transition,
    collecting,
    transition,
)
from app.services.result import Result
