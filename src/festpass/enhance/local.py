"""Local, non-AI photo enhancement used when the external service is unavailable."""

from __future__ import annotations

import io

from PIL import Image, ImageEnhance, ImageFilter, ImageOps

_BRIGHTNESS = 1.1
_SATURATION = 1.2
_GAMMA = 1.1


def _gamma_table(gamma: float) -> list[int]:
    inv = 1.0 / gamma
    return [round(255 * ((i / 255) ** inv)) for i in range(256)] * 3


def local_enhance(photo: bytes) -> bytes:
    """Brighten, saturate, gamma-correct and sharpen *photo*; returns PNG bytes.

    Raises ``PIL.UnidentifiedImageError`` / ``OSError`` for undecodable input.
    """
    with Image.open(io.BytesIO(photo)) as img:
        img = ImageOps.exif_transpose(img).convert("RGB")
    img = ImageEnhance.Brightness(img).enhance(_BRIGHTNESS)
    img = ImageEnhance.Color(img).enhance(_SATURATION)
    img = img.point(_gamma_table(_GAMMA))
    img = img.filter(ImageFilter.UnsharpMask(radius=1, percent=120, threshold=2))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()
