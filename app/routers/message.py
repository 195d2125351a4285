from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.message import MessageRequest, MessageResponse
from app.services.message_router import process_message

router = APIRouter()


@router.post("/message", response_model=MessageResponse)
def handle_message(request: MessageRequest, db: Session = Depends(get_db)):
    """Handle one normalized inbound message from the webhook layer.

    Always answers 200 once the envelope is valid; failures are reported to the
    user and to the ops chat, not to the transport.
    """
    result = process_message(db, request)
    return MessageResponse(
        success=result.status is not None,
        user_id=result.user_id,
        status=result.status,
        handled_by=result.handled_by,
        message=result.detail,
    )
