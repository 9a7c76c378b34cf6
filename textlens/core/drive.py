"""Google Drive link loader for remote image ingestion."""

import logging
import re
from typing import Optional

import httpx

from .errors import ErrorKind, ScanError
from .validator import CandidateFile

logger = logging.getLogger(__name__)

DRIVE_HOST = 'drive.google.com'
DOWNLOAD_URL_TEMPLATE = 'https://drive.google.com/uc?export=download&id={file_id}'
DRIVE_FILENAME = 'drive-image.jpg'
FETCH_FAILED_MESSAGE = (
    'Failed to load image from Google Drive. Make sure the file is shared publicly.'
)

_FILE_PATH_PATTERN = re.compile(r'/file/d/([^/]+)')
_ID_PARAM_PATTERN = re.compile(r'[?&]id=([^&]+)')


def is_drive_link(url: str) -> bool:
    """Check whether a URL points at Google Drive."""
    return DRIVE_HOST in url


def convert_drive_url(url: str) -> str:
    """Convert a shared Drive link into a direct download URL.

    Supports ``/file/d/<id>/view`` and ``open?id=<id>`` style links.

    Args:
        url: Shared Google Drive link.

    Returns:
        Direct download URL for the file.

    Raises:
        ScanError: DRIVE_LINK_INVALID if no file id can be found.
    """
    file_id = None

    match = _FILE_PATH_PATTERN.search(url)
    if match:
        file_id = match.group(1)

    # An explicit id parameter takes precedence
    match = _ID_PARAM_PATTERN.search(url)
    if match:
        file_id = match.group(1)

    if not file_id:
        raise ScanError(ErrorKind.DRIVE_LINK_INVALID, 'Invalid Google Drive URL')

    return DOWNLOAD_URL_TEMPLATE.format(file_id=file_id)


async def fetch_drive_image(
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0
) -> CandidateFile:
    """Download an image shared through Google Drive.

    Args:
        url: Shared Google Drive link.
        client: Optional HTTP client to reuse.
        timeout: Request timeout in seconds when creating a client.

    Returns:
        CandidateFile holding the downloaded bytes.

    Raises:
        ScanError: DRIVE_LINK_INVALID for malformed links or failed downloads,
            INVALID_TYPE if the download isn't an image.
    """
    direct_url = convert_drive_url(url)
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    try:
        response = await http.get(direct_url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Drive download failed for {direct_url}: {e}")
        raise ScanError(ErrorKind.DRIVE_LINK_INVALID, FETCH_FAILED_MESSAGE) from e
    finally:
        if owns_client:
            await http.aclose()

    media_type = response.headers.get('content-type', '').split(';')[0].strip()
    if not media_type.startswith('image/'):
        raise ScanError(ErrorKind.INVALID_TYPE, 'URL does not point to an image')

    data = response.content
    return CandidateFile(name=DRIVE_FILENAME, media_type=media_type, data=data, size=len(data))
