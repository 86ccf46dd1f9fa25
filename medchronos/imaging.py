"""
Image normalization.

Every upload is center-cropped and resized to a fixed square JPEG before any
model sees it. The caption pipeline only ever consumes the base64 form.
"""
import base64
import io
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import InvalidInputError
from .input_sanitization import validate_image_type

TARGET_SIZE = 896
JPEG_QUALITY = 90
OUTPUT_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class NormalizedImage:
    data: bytes
    base64: str
    mime_type: str = OUTPUT_MIME_TYPE
    width: int = TARGET_SIZE
    height: int = TARGET_SIZE


def is_valid_image_format(mime_type: str) -> bool:
    return validate_image_type(mime_type)


def normalize(raw_bytes: bytes, size: int = TARGET_SIZE, quality: int = JPEG_QUALITY) -> NormalizedImage:
    """Center-crop and resize to size x size JPEG.

    Raises:
        InvalidInputError: bytes are empty or not a decodable image
    """
    if not raw_bytes:
        raise InvalidInputError("Image is empty")
    try:
        image = Image.open(io.BytesIO(raw_bytes))
        image = ImageOps.exif_transpose(image).convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise InvalidInputError(f"Failed to read image: {e}") from e

    image = ImageOps.fit(image, (size, size), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, optimize=True)
    data = buffer.getvalue()
    return NormalizedImage(
        data=data,
        base64=base64.b64encode(data).decode(),
        width=size,
        height=size,
    )
