import io
import logging
from datetime import datetime
from typing import Tuple

from PIL import Image

from .models import PrinterSnapshot

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE: Tuple[int, int] = (640, 640)


def describe_snapshot(snapshot: PrinterSnapshot) -> str:
    parts = [
        f"Print: {snapshot.filename}",
        f"Progress: {snapshot.progress}%",
        f"State: {snapshot.status.value}",
    ]
    if snapshot.total_layers:
        parts.insert(2, f"Layer: {snapshot.current_layer}/{snapshot.total_layers}")
    if snapshot.model:
        parts.append(f"Printer: {snapshot.model.value}")
    return " | ".join(parts)


def render_cover_thumbnail(
    image_bytes: bytes,
    snapshot: PrinterSnapshot,
    size: Tuple[int, int] = THUMBNAIL_SIZE,
) -> bytes:
    """Shrink a cover image to a JPEG thumbnail with the print described in EXIF.

    Cover images from Home Assistant are usually PNG with transparency, so the
    image is flattened onto white first. On any decoding failure the original
    bytes are returned untouched.
    """
    if not image_bytes:
        return image_bytes
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
        if img.mode in ("RGBA", "LA", "P"):
            img = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            img = background
        elif img.mode != "RGB":
            img = img.convert("RGB")
        img.thumbnail(size)

        exif = img.getexif()
        exif[0x010E] = describe_snapshot(snapshot)  # ImageDescription
        exif[0x0131] = "HA Printer Bridge"  # Software
        exif[0x9003] = datetime.now().strftime("%Y:%m:%d %H:%M:%S")  # DateTimeOriginal

        output = io.BytesIO()
        img.save(output, format="JPEG", exif=exif, quality=85)
        return output.getvalue()
    except Exception as e:
        logger.warning("[%s] Failed to render cover thumbnail: %s", snapshot.prefix, e)
        return image_bytes
