from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

PlatformName = Literal["whatsapp", "facebook", "instagram", "meta-unified", "meta"]


class InboundImage(BaseModel):
    """Image attachment: inline base64 data (WhatsApp) or a download URL (Meta)."""

    model_config = ConfigDict(populate_by_name=True)

    data: Optional[str] = Field(default=None, validation_alias=AliasChoices("data", "base64", "bytes"))
    url: Optional[str] = None
    mime_type: str = Field(default="image/jpeg", validation_alias=AliasChoices("mime_type", "mimeType"))

    @model_validator(mode="after")
    def _require_source(self):
        if not self.data and not self.url:
            raise ValueError("image needs data or url")
        return self


class MessageRequest(BaseModel):
    """Normalized inbound envelope posted by the webhook layer."""

    model_config = ConfigDict(populate_by_name=True)

    platform: PlatformName
    sender_id: str = Field(min_length=1, validation_alias=AliasChoices("sender_id", "senderId"))
    text: Optional[str] = None
    image: Optional[InboundImage] = None


class IncomingMessage(BaseModel):
    """An inbound message with its image already resolved to bytes."""

    model_config = ConfigDict(frozen=True)

    platform: PlatformName
    sender_id: str
    text: Optional[str] = None
    image: Optional[bytes] = None
    mime_type: str = "image/jpeg"

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    @property
    def has_image(self) -> bool:
        return bool(self.image)


class MessageResponse(BaseModel):
    success: bool
    user_id: str
    status: Optional[str] = None
    handled_by: Optional[str] = None
    message: Optional[str] = None
