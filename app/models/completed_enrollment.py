import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from app.database import Base


class CompletedEnrollment(Base):
    __tablename__ = "completed_enrollments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    platform = Column(Text, nullable=False)
    snapshot = Column(JSONB, nullable=False)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=False)
