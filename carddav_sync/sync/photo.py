"""
Photo import for reconciled contacts.

Provides utilities for:
- Decoding data URI photos carried inside vCards
- Downloading photos referenced by URL
- Image validation and conversion to JPEG
- Storing the result under the photo directory, one file per contact
"""

import base64
import binascii
import io
import logging
import re
from pathlib import Path
from urllib.parse import unquote_to_bytes

import requests
from PIL import Image
from requests.exceptions import RequestException

from carddav_sync import __version__

# HTTP timeout configuration
DOWNLOAD_TIMEOUT = 30.0  # seconds

# Photo processing configuration
MAX_PHOTO_SIZE = 5 * 1024 * 1024  # 5MB
MAX_PHOTO_DIMENSION = 1024  # pixels
JPEG_QUALITY = 85

DATA_URI_PATTERN = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]*)*?)(?P<base64>;base64)?,(?P<data>.*)$",
    re.DOTALL | re.IGNORECASE,
)

logger = logging.getLogger(__name__)


class PhotoError(Exception):
    """Raised when a photo operation fails."""

    pass


class PhotoDownloadError(PhotoError):
    """Raised when a photo download fails."""

    pass


def decode_data_uri(uri: str) -> bytes:
    """
    Decode the payload of a data URI.

    Args:
        uri: A ``data:`` URI, base64 or percent-encoded

    Returns:
        The decoded bytes

    Raises:
        PhotoError: If the URI is not a valid data URI
    """
    match = DATA_URI_PATTERN.match(uri.strip())
    if not match:
        raise PhotoError("Photo is not a valid data URI")

    data = match.group("data")
    if match.group("base64"):
        try:
            return base64.b64decode(re.sub(r"\s+", "", data), validate=True)
        except (binascii.Error, ValueError) as e:
            raise PhotoError(f"Invalid base64 photo data: {e}") from e

    return unquote_to_bytes(data)


def download_photo(url: str, timeout: float = DOWNLOAD_TIMEOUT) -> bytes:
    """
    Download a photo from a URL.

    No retries: photo import is best effort and runs inside a reconciliation
    transaction.

    Args:
        url: http(s) URL of the photo
        timeout: Request timeout in seconds

    Returns:
        Photo data as bytes

    Raises:
        PhotoDownloadError: If the download fails
        PhotoError: For invalid input
    """
    if not url:
        raise PhotoError("Photo URL cannot be empty")

    if not url.startswith(("http://", "https://")):
        raise PhotoError(f"Invalid photo URL scheme: {url}")

    try:
        logger.debug(f"Downloading photo from {url}")
        response = requests.get(
            url,
            timeout=timeout,
            headers={"User-Agent": f"carddav-sync/{__version__}"},
        )
        response.raise_for_status()
    except requests.HTTPError as e:
        raise PhotoDownloadError(f"Failed to download photo: {e}") from e
    except requests.Timeout as e:
        raise PhotoDownloadError(f"Download timeout: {url}") from e
    except RequestException as e:
        raise PhotoDownloadError(f"Network error downloading photo: {e}") from e

    if not response.content:
        raise PhotoDownloadError(f"Empty response from {url}")

    content_type = response.headers.get("content-type", "").lower()
    if content_type and not content_type.startswith("image/"):
        logger.warning(f"Unexpected content type for photo: {content_type} from {url}")

    return response.content


def process_photo(
    photo_data: bytes,
    max_size: int = MAX_PHOTO_SIZE,
    max_dimension: int = MAX_PHOTO_DIMENSION,
) -> bytes:
    """
    Validate photo data and convert it to a bounded JPEG.

    Args:
        photo_data: Raw image bytes in any format Pillow reads
        max_size: Maximum output size in bytes
        max_dimension: Maximum width/height in pixels

    Returns:
        JPEG bytes

    Raises:
        PhotoError: If the data is not an image or cannot be shrunk enough
    """
    if not photo_data:
        raise PhotoError("Photo data cannot be empty")

    try:
        image = Image.open(io.BytesIO(photo_data))
        image.load()
    except (Image.UnidentifiedImageError, OSError) as e:
        raise PhotoError("Invalid or unsupported image format") from e

    if image.mode not in ("RGB", "L"):
        if image.mode == "RGBA":
            # Flatten transparency onto white
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[3])
            image = background
        else:
            image = image.convert("RGB")

    if max(image.size) > max_dimension:
        image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    quality = JPEG_QUALITY
    while True:
        output = io.BytesIO()
        image.save(output, format="JPEG", quality=quality, optimize=True)
        output_data = output.getvalue()
        if len(output_data) <= max_size or quality <= 20:
            break
        quality -= 5

    if len(output_data) > max_size:
        raise PhotoError(
            f"Unable to reduce photo size below {max_size} bytes "
            f"(current: {len(output_data)} bytes)"
        )

    logger.debug(f"Processed photo: {len(photo_data)} -> {len(output_data)} bytes")
    return output_data


def save_contact_photo(
    photo_ref: str,
    photo_dir: Path,
    person_id: int,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """
    Store a contact's photo as ``<photo_dir>/<person_id>.jpg``.

    Args:
        photo_ref: Data URI or http(s) URL from the contact record
        photo_dir: Directory for stored photos (created if missing)
        person_id: Local contact id
        timeout: Download timeout for URL photos

    Returns:
        Path of the written file

    Raises:
        PhotoError: If the photo cannot be read, processed or written
    """
    if photo_ref.lower().startswith("data:"):
        raw = decode_data_uri(photo_ref)
    else:
        raw = download_photo(photo_ref, timeout=timeout)

    jpeg = process_photo(raw)

    target = Path(photo_dir) / f"{person_id}.jpg"
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(jpeg)
    except OSError as e:
        raise PhotoError(f"Could not write photo to {target}: {e}") from e

    logger.debug(f"Saved photo for contact {person_id} to {target}")
    return target
