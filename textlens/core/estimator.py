"""Cost Estimator component for image token estimation."""

import math
from dataclasses import dataclass
from typing import Optional

BASE_TOKENS: int = 258
PIXELS_PER_TOKEN: int = 750

SIZE_UNITS: list[str] = ['Bytes', 'KB', 'MB', 'GB']


@dataclass
class TokenEstimate:
    """Advisory token estimate for one ingested image."""
    tokens: int
    width: int
    height: int
    size: int

    @property
    def summary(self) -> str:
        """Dimensions and size line shown next to the token count."""
        return f"{self.width} × {self.height}px ({format_file_size(self.size)})"


def estimate_tokens(width: int, height: int) -> int:
    """Estimate the model's token cost for an image.

    Uses the fixed approximation ``258 + ceil(width * height / 750)``.

    Args:
        width: Image width in pixels.
        height: Image height in pixels.

    Returns:
        Estimated token count.
    """
    # Integer ceiling division
    pixel_tokens = -(-(width * height) // PIXELS_PER_TOKEN)
    return BASE_TOKENS + pixel_tokens


def estimate(width: Optional[int], height: Optional[int], size: int) -> Optional[TokenEstimate]:
    """Build a TokenEstimate, or None when dimensions are unknown."""
    if width is None or height is None:
        return None
    return TokenEstimate(
        tokens=estimate_tokens(width, height),
        width=width,
        height=height,
        size=size
    )


def format_file_size(num_bytes: int) -> str:
    """Format a byte count for display.

    Args:
        num_bytes: Size in bytes.

    Returns:
        String such as "0 Bytes", "1.5 KB" or "1 MB".
    """
    if num_bytes <= 0:
        return '0 Bytes'

    index = min(int(math.floor(math.log(num_bytes, 1024))), len(SIZE_UNITS) - 1)
    # log() can land just below an exact power of 1024
    if index + 1 < len(SIZE_UNITS) and num_bytes >= 1024 ** (index + 1):
        index += 1

    value = round(num_bytes / 1024 ** index, 2)
    text = f"{value:.2f}".rstrip('0').rstrip('.')
    return f"{text} {SIZE_UNITS[index]}"
