"""
Webhook payload schemas - raw Z-API input and the normalized message it becomes.
The webhook normalizes each payload into an InboundMessage before processing.
"""
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field


class ZapiText(BaseModel):
    """Z-API sends text as {"message": "..."}."""
    message: Optional[str] = None


class ZapiImage(BaseModel):
    imageUrl: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    mimeType: Optional[str] = None


class ZapiAudio(BaseModel):
    audioUrl: Optional[str] = None
    url: Optional[str] = None
    mimeType: Optional[str] = None
    seconds: Optional[int] = None


class ZapiVideo(BaseModel):
    videoUrl: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    mimeType: Optional[str] = None


class ZapiDocument(BaseModel):
    documentUrl: Optional[str] = None
    url: Optional[str] = None
    fileName: Optional[str] = None
    mimeType: Optional[str] = None


class ZapiMessagePayload(BaseModel):
    """Z-API "on message received" webhook payload (unknown fields ignored)."""
    phone: Optional[str] = None
    chatName: Optional[str] = None
    senderName: Optional[str] = None
    isGroup: bool = False
    fromMe: bool = False
    messageId: Optional[str] = None
    momment: Optional[int] = None
    text: Optional[Union[ZapiText, str]] = None
    image: Optional[ZapiImage] = None
    audio: Optional[ZapiAudio] = None
    video: Optional[ZapiVideo] = None
    document: Optional[ZapiDocument] = None


class ZapiStatusPayload(BaseModel):
    """Z-API delivery status callback."""
    messageId: Optional[str] = None
    ids: Optional[list[str]] = None
    status: Optional[str] = None  # SENT, RECEIVED, READ, PLAYED, FAILED
    phone: Optional[str] = None


# --- Normalized message body: one variant per message kind ---

class TextBody(BaseModel):
    kind: Literal["text"] = "text"
    text: str = ""


class ImageBody(BaseModel):
    kind: Literal["image"] = "image"
    text: str = ""  # caption
    media_url: Optional[str] = None


class AudioBody(BaseModel):
    kind: Literal["audio"] = "audio"
    text: str = ""
    media_url: Optional[str] = None


class VideoBody(BaseModel):
    kind: Literal["video"] = "video"
    text: str = ""
    media_url: Optional[str] = None


class DocumentBody(BaseModel):
    kind: Literal["document"] = "document"
    text: str = ""
    media_url: Optional[str] = None
    file_name: Optional[str] = None


MessageBody = Annotated[
    Union[TextBody, ImageBody, AudioBody, VideoBody, DocumentBody],
    Field(discriminator="kind"),
]


class InboundMessage(BaseModel):
    """Validated, canonical form of a provider message."""
    phone: str = Field(..., description="Digits only, 10-15 characters")
    whatsapp_id: str = Field(..., description="Chat id, the normalized phone")
    display_name: Optional[str] = None
    body: MessageBody
    from_me: bool = False
    message_id: Optional[str] = None
    is_group: bool = False

    @property
    def text(self) -> str:
        return self.body.text

    @property
    def media_type(self) -> Optional[str]:
        return None if self.body.kind == "text" else self.body.kind

    @property
    def media_url(self) -> Optional[str]:
        return getattr(self.body, "media_url", None)


class MessageStatusUpdate(BaseModel):
    """Delivery status change for one or more previously sent messages."""
    message_ids: list[str]
    status: str = Field(..., description="sent, delivered, read, failed")
