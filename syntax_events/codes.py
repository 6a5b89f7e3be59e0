import io
import logging
import secrets
from typing import Dict, Optional

import qrcode

from syntax_events.media import MediaGateway

logger = logging.getLogger(__name__)

QR_FOLDER = "tickets/qr"


def mint_code() -> str:
    """Opaque, URL-safe ticket code with 128 bits of entropy."""
    return secrets.token_urlsafe(16)


def qr_png_bytes(code: str) -> bytes:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=8,
        border=2,
    )
    qr.add_data(code)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class CodeService:
    """Mints ticket codes and publishes their QR images."""

    def __init__(self, media: MediaGateway) -> None:
        self.media = media

    def mint_code(self) -> str:
        return mint_code()

    def render_qr(self, code: str, previous_media_id: Optional[str] = None) -> Dict[str, str]:
        """Upload a QR for ``code``; returns ``{"url", "mediaId"}``.

        The upload uses ``code`` as its public id with overwrite, so a retry
        replaces the earlier image instead of leaving a second one behind.
        Raises MediaUnavailableError when the store is unreachable.
        """
        uploaded = self.media.upload(
            qr_png_bytes(code),
            folder=QR_FOLDER,
            content_type="image/png",
            public_id=code,
        )
        if previous_media_id and previous_media_id != uploaded["mediaId"]:
            try:
                self.media.delete(previous_media_id, "image")
            except Exception as exc:
                logger.warning("Could not remove superseded QR %s: %s", previous_media_id, exc)
        return {"url": uploaded["url"], "mediaId": uploaded["mediaId"]}
