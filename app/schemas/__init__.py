from app.schemas.enrollment import (
    AssistantResult,
    ExtractionResult,
    FinalSnapshot,
    IneBackFields,
    IneFrontFields,
    PaymentRecord,
    ScheduleResult,
    ValidationResult,
)
from app.schemas.message import IncomingMessage, InboundImage, MessageRequest, MessageResponse

__all__ = [
    "AssistantResult",
    "ExtractionResult",
    "FinalSnapshot",
    "IncomingMessage",
    "InboundImage",
    "IneBackFields",
    "IneFrontFields",
    "MessageRequest",
    "MessageResponse",
    "PaymentRecord",
    "ScheduleResult",
    "ValidationResult",
]
