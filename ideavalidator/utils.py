import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Optional

import pypdf

from ideavalidator.errors import ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_ATTACHMENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/heic",
    "application/pdf",
    "text/plain",
    "text/markdown",
}
MAX_ATTACHMENT_BYTES = 8 * 1024 * 1024
# Text handed to text-only providers is clipped so the prompt stays within their context windows
MAX_ATTACHMENT_TEXT_CHARS = 20000


@dataclass(frozen=True)
class DecodedAttachment:
    mime_type: str
    data: bytes

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


def decode_attachment(mime_type: str, data_b64: str) -> DecodedAttachment:
    """Validate an uploaded attachment and decode its base64 payload.

    Accepts both bare base64 and ``data:<mime>;base64,<payload>`` URIs.
    """
    mime = (mime_type or "").strip().lower()
    if mime not in ALLOWED_ATTACHMENT_TYPES:
        raise ValidationFailed(f"Unsupported attachment type: {mime or 'unknown'}")
    payload = (data_b64 or "").strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationFailed("Attachment data is not valid base64")
    if not raw:
        raise ValidationFailed("Attachment is empty")
    if len(raw) > MAX_ATTACHMENT_BYTES:
        raise ValidationFailed("Attachment is too large (max 8 MB)")
    return DecodedAttachment(mime_type=mime, data=raw)


def extract_attachment_text(attachment: DecodedAttachment) -> Optional[str]:
    """Plain-text rendition of an attachment for text-only providers.

    Returns None when the attachment has no usable text (images, scanned PDFs).
    """
    text = ""
    if attachment.mime_type.startswith("text/"):
        text = attachment.data.decode("utf-8", errors="ignore")
    elif attachment.mime_type == "application/pdf":
        try:
            reader = pypdf.PdfReader(io.BytesIO(attachment.data))
            text = "\n".join((page.extract_text() or "") for page in reader.pages)
        except Exception as e:
            logger.warning(f"Could not extract text from PDF attachment: {e}")
            return None
    text = text.strip()
    if not text:
        return None
    return text[:MAX_ATTACHMENT_TEXT_CHARS]
