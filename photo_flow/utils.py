import base64
from io import BytesIO

from PIL import Image, ImageOps

ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP"}


def ensure_allowed_image(data: bytes) -> str:
    """Verify the bytes decode as an allowed image format and return it."""
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            fmt = (img.format or "").upper()
    except Exception as e:
        raise ValueError(f"Invalid image file: {e}")

    if fmt not in ALLOWED_FORMATS:
        raise ValueError(f"Unsupported image format: {fmt or 'unknown'}. Allowed: {sorted(ALLOWED_FORMATS)}")
    return fmt


def to_jpeg(data: bytes, quality: int = 90) -> bytes:
    """Re-encode any allowed image as JPEG, honouring EXIF orientation."""
    ensure_allowed_image(data)
    with Image.open(BytesIO(data)) as img:
        img = ImageOps.exif_transpose(img).convert("RGB")
        out = BytesIO()
        img.save(out, format="JPEG", quality=quality)
        return out.getvalue()


def mirror_jpeg(data: bytes, quality: int = 90) -> bytes:
    with Image.open(BytesIO(data)) as img:
        out = BytesIO()
        ImageOps.mirror(img.convert("RGB")).save(out, format="JPEG", quality=quality)
        return out.getvalue()


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")
