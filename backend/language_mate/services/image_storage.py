"""On-disk storage for images attached to chat messages.

Constructed once by the application lifespan and handed to whoever needs it;
there is no module-level instance.
"""

import base64
import io
import json
import logging
import re
import uuid
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from language_mate.core.errors import InvalidImageError
from language_mate.core.sandbox import resolve_sandboxed_path
from language_mate.schemas.messages import ImageAttachment

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = {"image/png", "image/jpeg", "image/webp", "image/gif"}
MAX_IMAGE_BYTES = 10 * 1024 * 1024

_IMAGE_ID = re.compile(r"^[0-9a-f]{32}$")


class ImageStorage:
    def __init__(self, root: Path):
        self.root = root

    def _paths(self, image_id: str) -> tuple[Path, Path]:
        if not _IMAGE_ID.match(image_id):
            raise FileNotFoundError(f"Unknown image id '{image_id}'")
        return (
            resolve_sandboxed_path(self.root, f"{image_id}.bin"),
            resolve_sandboxed_path(self.root, f"{image_id}.json"),
        )

    def save_image(self, data: bytes, filename: str) -> ImageAttachment:
        if len(data) > MAX_IMAGE_BYTES:
            raise InvalidImageError(f"Image '{filename}' is larger than {MAX_IMAGE_BYTES // (1024 * 1024)} MB")

        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                mime_type = Image.MIME.get(img.format or "", "")
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidImageError(f"'{filename}' is not a readable image") from e

        if mime_type not in SUPPORTED_MIME_TYPES:
            raise InvalidImageError(f"Unsupported image type '{mime_type or 'unknown'}'")

        attachment = ImageAttachment(
            id=uuid.uuid4().hex,
            filename=filename,
            mime_type=mime_type,
            size=len(data),
            width=width,
            height=height,
        )
        self.root.mkdir(parents=True, exist_ok=True)
        blob_path, meta_path = self._paths(attachment.id)
        blob_path.write_bytes(data)
        meta_path.write_text(attachment.model_dump_json())
        logger.debug(f"Stored image {attachment.id} ({mime_type}, {width}x{height})")
        return attachment

    def get_image(self, image_id: str) -> tuple[ImageAttachment, bytes]:
        blob_path, meta_path = self._paths(image_id)
        if not blob_path.exists() or not meta_path.exists():
            raise FileNotFoundError(f"Unknown image id '{image_id}'")
        attachment = ImageAttachment.model_validate(json.loads(meta_path.read_text()))
        return attachment, blob_path.read_bytes()

    def to_data_url(self, image_id: str) -> str:
        attachment, data = self.get_image(image_id)
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{attachment.mime_type};base64,{encoded}"

    def delete(self, image_id: str) -> bool:
        blob_path, meta_path = self._paths(image_id)
        existed = blob_path.exists()
        blob_path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)
        return existed
