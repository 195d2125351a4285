from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(Text, primary_key=True)  # platform-scoped sender id (remoteJid, PSID, IGSID)
    platform = Column(Text, nullable=False)  # whatsapp, facebook, instagram, meta-unified, meta
    inscription_status = Column(Text, nullable=False, default="not_started")
    inscription_data = Column(JSONB, nullable=False, default=dict)
    payment = Column(JSONB)
    history = Column(JSONB, nullable=False, default=list)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True))
