"""Media gateway: the only path from this service to the object store."""

import io
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import cloudinary
import cloudinary.api
import cloudinary.uploader

from syntax_events.errors import BadRequestError, MediaUnavailableError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg":  "jpg",
    "image/png":  "png",
    "image/gif":  "gif",
    "image/webp": "webp",
    "video/mp4":  "mp4",
    "video/mpeg": "mpeg",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "application/pdf": "pdf",
}

DEFAULT_MAX_BYTES = 25 * 1024 * 1024


def kind_for(content_type: str) -> str:
    if content_type.startswith("image/"):
        return "image"
    if content_type.startswith("video/"):
        return "video"
    return "raw"


def validate_upload(
    data: bytes,
    content_type: str,
    allowed: Optional[Iterable[str]] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> None:
    allowed = set(allowed) if allowed is not None else set(ALLOWED_CONTENT_TYPES)
    if content_type not in allowed:
        raise BadRequestError(
            f'Invalid file type "{content_type}".',
            {"allowed": sorted(allowed)},
        )
    if len(data) > max_bytes:
        raise BadRequestError(
            f"File size ({len(data) / (1024 * 1024):.2f} MB) exceeds the limit of "
            f"{max_bytes / (1024 * 1024):.0f} MB",
        )


class MediaGateway(ABC):
    """Interface for object-store operations. All methods are safe to retry."""

    @abstractmethod
    def upload(
        self,
        data: bytes,
        folder: str,
        content_type: str,
        public_id: Optional[str] = None,
        allowed: Optional[Iterable[str]] = None,
    ) -> Dict[str, str]:
        """Store ``data`` and return ``{"url", "mediaId", "kind"}``."""
        ...

    @abstractmethod
    def delete(self, media_id: str, kind: str = "image") -> None:
        """Remove one object. A missing object is not an error."""
        ...

    @abstractmethod
    def delete_many(self, refs: Iterable[Dict[str, str]]) -> None:
        """Best-effort bulk removal; failures are logged, never raised."""
        ...

    @abstractmethod
    def ping(self) -> None:
        """Raise MediaUnavailableError unless the store answers."""
        ...


class CloudinaryMediaGateway(MediaGateway):
    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        max_bytes: int = DEFAULT_MAX_BYTES,
        timeout: float = 10.0,
    ) -> None:
        self.max_bytes = max_bytes
        self.timeout = timeout
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )

    @classmethod
    def from_settings(cls, settings) -> "CloudinaryMediaGateway":
        return cls(
            settings.cloudinary_cloud_name,
            settings.cloudinary_api_key,
            settings.cloudinary_api_secret,
            max_bytes=settings.media_max_bytes,
            timeout=settings.side_effect_timeout,
        )

    def upload(self, data, folder, content_type, public_id=None, allowed=None):
        validate_upload(data, content_type, allowed, self.max_bytes)
        kind = kind_for(content_type)
        options = {
            "folder": folder,
            "resource_type": kind,
            "overwrite": True,
            "timeout": self.timeout,
        }
        if public_id:
            options["public_id"] = public_id
        try:
            result = cloudinary.uploader.upload(io.BytesIO(data), **options)
        except Exception as exc:
            logger.warning("Cloudinary upload to %s failed: %s", folder, exc)
            raise MediaUnavailableError("Failed to upload file to media storage") from exc
        return {
            "url": result["secure_url"],
            "mediaId": result["public_id"],
            "kind": result.get("resource_type", kind),
        }

    def delete(self, media_id, kind="image"):
        try:
            result = cloudinary.uploader.destroy(
                media_id, resource_type=kind, timeout=self.timeout
            )
        except Exception as exc:
            logger.warning("Cloudinary delete of %s failed: %s", media_id, exc)
            raise MediaUnavailableError(f'Failed to delete "{media_id}" from media storage') from exc
        if result.get("result") not in ("ok", "not found"):
            raise MediaUnavailableError(
                f'Media storage did not confirm deletion of "{media_id}" '
                f'(result: {result.get("result")})'
            )

    def delete_many(self, refs):
        by_kind: Dict[str, List[str]] = {}
        for ref in refs:
            if not ref or not ref.get("mediaId"):
                continue
            by_kind.setdefault(ref.get("kind") or "image", []).append(ref["mediaId"])

        for kind, media_ids in by_kind.items():
            try:
                cloudinary.api.delete_resources(media_ids, resource_type=kind)
            except Exception as exc:
                logger.error(
                    "Bulk delete of %d %s object(s) failed: %s", len(media_ids), kind, exc
                )

    def ping(self):
        try:
            response = cloudinary.api.ping()
        except Exception as exc:
            raise MediaUnavailableError(f"Cloudinary ping failed: {exc}") from exc
        if response.get("status") != "ok":
            raise MediaUnavailableError(
                f"Cloudinary ping failed. Status: {response.get('status', 'unknown')}"
            )
