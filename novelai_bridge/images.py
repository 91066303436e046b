"""Source-image helpers used at the request boundary."""

import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, Optional

from PIL import Image, UnidentifiedImageError

from .errors import ValidationError

MAX_OUTPUT_SIZE = 1048576

_MAGIC = {
    b"\xff\xd8\xff": "image/jpeg",
    b"\x89PNG": "image/png",
    b"RIFF": "image/webp",
    b"GIF8": "image/gif",
}


def strip_data_prefix(value: str) -> str:
    if isinstance(value, str) and value.startswith("data:") and "," in value:
        return value.split(",", 1)[1]
    return value


def sniff_mime(data: bytes) -> Optional[str]:
    for magic, mime in _MAGIC.items():
        if data.startswith(magic):
            return mime
    return None


def validate_image_bytes(data: bytes) -> str:
    """Return the MIME type, or raise ValidationError if data isn't an image."""
    if len(data) < 4:
        raise ValidationError(".invalid-image")
    mime = sniff_mime(data)
    if mime is None:
        raise ValidationError(".invalid-image")
    return mime


@dataclass(frozen=True)
class SourceImage:
    """An already-fetched source image in the three forms backends accept."""
    buffer: bytes
    base64: str
    data_url: str

    @classmethod
    def from_bytes(cls, data: bytes) -> "SourceImage":
        mime = validate_image_bytes(data)
        encoded = base64.b64encode(data).decode("utf-8")
        return cls(buffer=data, base64=encoded, data_url=f"data:{mime};base64,{encoded}")

    @classmethod
    def from_base64(cls, value: str) -> "SourceImage":
        try:
            data = base64.b64decode(strip_data_prefix(value).strip(), validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(".invalid-image") from None
        return cls.from_bytes(data)

    @property
    def size(self) -> Dict[str, int]:
        return get_image_size(self.buffer)


def get_image_size(data: bytes) -> Dict[str, int]:
    try:
        with Image.open(BytesIO(data)) as image:
            width, height = image.size
    except (UnidentifiedImageError, OSError):
        raise ValidationError(".invalid-image") from None
    return {"width": width, "height": height}


def closest_multiple(num: float, mult: int = 64) -> int:
    """Nearest multiple of `mult` (ties round up), never below `mult`."""
    floor = int(num // mult) * mult
    ceil = floor if floor == num else floor + mult
    closest = floor if num - floor < ceil - num else ceil
    return closest if closest > 0 else mult


def resize_input(size: Dict[str, int], mult: int = 64) -> Dict[str, int]:
    """Pick a generation size for an image-edit request from the source size."""
    width, height = size["width"], size["height"]
    if width % mult == 0 and height % mult == 0 and width * height <= MAX_OUTPUT_SIZE:
        return {"width": width, "height": height}

    # shorter side to 512, keep the aspect ratio
    ratio = width / height
    if ratio > 1:
        target = {"width": closest_multiple(512 * ratio, mult), "height": 512}
    else:
        target = {"width": 512, "height": closest_multiple(512 / ratio, mult)}
    if target["width"] * target["height"] <= MAX_OUTPUT_SIZE:
        return target

    # longer side to 1024 instead
    if ratio > 1:
        return {"width": 1024, "height": closest_multiple(1024 / ratio, mult)}
    return {"width": closest_multiple(1024 * ratio, mult), "height": 1024}
