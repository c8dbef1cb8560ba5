import base64
import io
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .schemas import RegionOfInterest


DEFAULT_MAX_SIZE = 768
DEFAULT_QUALITY = 80
THUMBNAIL_QUALITY = 70


class FrameCaptureError(ValueError):
    pass


@dataclass
class CapturedFrame:
    blob: bytes
    data_url: str
    width: int
    height: int

    @property
    def base64(self) -> str:
        return base64.b64encode(self.blob).decode("ascii")


def _encode_jpeg(img: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def capture_frame(
    image_bytes: bytes,
    roi: Optional[RegionOfInterest] = None,
    max_size: int = DEFAULT_MAX_SIZE,
    quality: int = DEFAULT_QUALITY,
) -> CapturedFrame:
    """Crop to ``roi`` (if any) and re-encode as a bounded-size JPEG."""
    if not image_bytes:
        raise FrameCaptureError("Frame is empty")
    try:
        with Image.open(io.BytesIO(image_bytes)) as src:
            img = src.copy()
    except (UnidentifiedImageError, OSError) as exc:
        raise FrameCaptureError("Frame is not a readable image") from exc
    if not img.width or not img.height:
        raise FrameCaptureError("Frame has no dimensions yet")
    if roi is not None:
        left = max(0, min(roi.x, img.width - 1))
        top = max(0, min(roi.y, img.height - 1))
        right = max(left + 1, min(roi.x + roi.width, img.width))
        bottom = max(top + 1, min(roi.y + roi.height, img.height))
        img = img.crop((left, top, right, bottom))
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    if max(img.size) > max_size:
        img.thumbnail((max_size, max_size), Image.LANCZOS)
    blob = _encode_jpeg(img, quality)
    thumbnail = base64.b64encode(_encode_jpeg(img, THUMBNAIL_QUALITY)).decode("ascii")
    return CapturedFrame(
        blob=blob,
        data_url=f"data:image/jpeg;base64,{thumbnail}",
        width=img.width,
        height=img.height,
    )
