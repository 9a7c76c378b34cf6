"""Image Validator component for upload checks and payload encoding."""

import base64
import io
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .errors import ErrorKind, ScanError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES: int = 20 * 1024 * 1024  # 20MB


@dataclass
class CandidateFile:
    """An upload that has not been validated yet."""
    name: str
    media_type: str
    data: bytes = field(repr=False)
    size: Optional[int] = None

    def __post_init__(self) -> None:
        if self.size is None:
            self.size = len(self.data)


@dataclass
class ValidatedImage:
    """Normalized image payload ready for preview and extraction."""
    name: str
    media_type: str
    size: int
    data: bytes = field(repr=False)
    preview_url: str = field(repr=False)
    base64_payload: str = field(repr=False)
    width: Optional[int] = None
    height: Optional[int] = None


class ImageValidator:
    """Enforce type and size constraints on candidate images."""

    MAX_BYTES: int = MAX_IMAGE_BYTES

    def validate(self, candidate: CandidateFile) -> ValidatedImage:
        """Validate a candidate file and encode its payloads.

        Args:
            candidate: File to validate.

        Returns:
            ValidatedImage with data-URL preview and base64 payload.

        Raises:
            ScanError: INVALID_TYPE for non-image media types,
                TOO_LARGE when the size exceeds 20MB.
        """
        if not (candidate.media_type or '').startswith('image/'):
            raise ScanError(ErrorKind.INVALID_TYPE, 'Please select a valid image file')

        if candidate.size > self.MAX_BYTES:
            raise ScanError(
                ErrorKind.TOO_LARGE,
                'Image file is too large. Maximum size is 20MB.'
            )

        payload = base64.b64encode(candidate.data).decode('ascii')
        width, height = self._read_dimensions(candidate.data)

        return ValidatedImage(
            name=candidate.name,
            media_type=candidate.media_type,
            size=candidate.size,
            data=candidate.data,
            preview_url=f"data:{candidate.media_type};base64,{payload}",
            base64_payload=payload,
            width=width,
            height=height
        )

    def _read_dimensions(self, data: bytes) -> tuple[Optional[int], Optional[int]]:
        """Decode pixel dimensions, or (None, None) if Pillow can't read the bytes."""
        try:
            with Image.open(io.BytesIO(data)) as image:
                return image.size
        except (UnidentifiedImageError, OSError) as e:
            logger.debug(f"Could not decode image dimensions: {e}")
            return None, None


def read_file(path: Path) -> CandidateFile:
    """Build a CandidateFile from a path on disk.

    Args:
        path: Path to the file.

    Returns:
        CandidateFile with media type guessed from the extension.
    """
    path = Path(path)
    media_type, _ = mimetypes.guess_type(path.name)
    data = path.read_bytes()
    return CandidateFile(
        name=path.name,
        media_type=media_type or 'application/octet-stream',
        data=data,
        size=len(data)
    )
