"""Credential compositor: template + photo + participant fields -> PNG.

Everything is positioned as a fraction of the template size, so any template
resolution works.  ``compose`` is pure: the same fields, photo and template
always produce the same layout (and the same bytes).
"""

from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import qrcode
from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from festpass.errors import FatalAssetError

log = logging.getLogger("festpass.compositor")

# --- Photo region (fractions of template width/height) ---
PHOTO_SIZE = 0.37
PHOTO_TOP = 0.405
PHOTO_INSET = 0.04
PHOTO_RADIUS = 0.04

# --- Text block ---
TEXT_COLOR = "#F8C76F"
TEXT_LEFT = 0.29
TEXT_WIDTH = 0.56
FONT_START = 0.035
FONT_FLOOR = 0.024
BASELINE_LIFT = 0.014
BASELINES = (
    ("name", 0.7425),
    ("organization", 0.7975),
    ("events", 0.8525),
    ("id", 0.9075),
)
EMPTY_VALUE = "N/A"
ELLIPSIS = "…"

# --- Placeholder ---
GRADIENT_TOP = (0xF8, 0xC7, 0x6F)
GRADIENT_BOTTOM = (0xD4, 0xAF, 0x37)
INITIALS_COLOR = "#3B2A0A"
INITIALS_SIZE = 0.4

# --- QR code (bottom right) ---
QR_SIZE = 0.14
QR_MARGIN = 0.04
QR_PADDING = 0.01

FONT_FILE = "DejaVuSans-Bold.ttf"


@dataclass
class Template:
    image: Image.Image
    path: str

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size


@dataclass
class CredentialFields:
    """What gets printed on one card."""

    name: str
    organization: str | None = None
    events: Sequence[str] = ()
    credential_id: str = ""

    def text_values(self) -> dict[str, str]:
        return {
            "name": self.name.strip() or EMPTY_VALUE,
            "organization": (self.organization or "").strip() or EMPTY_VALUE,
            "events": ", ".join(self.events) or EMPTY_VALUE,
            "id": self.credential_id.strip().upper() or EMPTY_VALUE,
        }

    def qr_payload(self) -> str:
        return json.dumps(
            {"id": self.credential_id, "name": self.name, "events": list(self.events)},
            sort_keys=True, separators=(",", ":"),
        )


@dataclass
class ComposedCredential:
    data: bytes
    width: int
    height: int
    layout: dict[str, Any] = field(default_factory=dict)
    placeholder: bool = False


def load_template(path: str | Path) -> Template:
    """Load and decode the base template.  Missing or unreadable is fatal."""
    path = Path(path)
    try:
        with Image.open(path) as img:
            image = img.convert("RGBA")
    except FileNotFoundError:
        raise FatalAssetError(f"Base template not found: {path}") from None
    except (OSError, UnidentifiedImageError) as exc:
        raise FatalAssetError(f"Base template unreadable: {path}: {exc}") from exc
    return Template(image=image, path=str(path))


# ---------------------------------------------------------------------------
# Fonts
# ---------------------------------------------------------------------------

def _font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    try:
        return ImageFont.truetype(FONT_FILE, size)
    except OSError:
        return ImageFont.load_default(size=size)


def fit_text(text: str, max_width: int, start: int, floor: int) -> tuple[str, int]:
    """Largest size in [floor, start] at which *text* fits *max_width*.

    Shrinks one point at a time.  If the text still overflows at the floor it
    is cut and ellipsised at the floor size.
    """
    size = start
    while size > floor and _font(size).getlength(text) > max_width:
        size -= 1
    font = _font(size)
    if font.getlength(text) <= max_width:
        return text, size
    cut = text
    while cut and font.getlength(cut + ELLIPSIS) > max_width:
        cut = cut[:-1]
    return cut.rstrip() + ELLIPSIS, size


# ---------------------------------------------------------------------------
# Photo
# ---------------------------------------------------------------------------

def _initials(name: str) -> str:
    letters = [w[0] for w in name.split() if w[:1].isalnum()]
    return "".join(letters[:2]).upper() or "?"


def _placeholder(side: int, name: str) -> Image.Image:
    ramp = np.linspace(0.0, 1.0, side)[:, None]
    top = np.array(GRADIENT_TOP, dtype=float)
    bottom = np.array(GRADIENT_BOTTOM, dtype=float)
    rows = np.rint(top + (bottom - top) * ramp).astype(np.uint8)
    pixels = np.repeat(rows[:, None, :], side, axis=1)
    tile = Image.fromarray(pixels).convert("RGBA")

    draw = ImageDraw.Draw(tile)
    draw.text(
        (side / 2, side / 2), _initials(name),
        fill=INITIALS_COLOR, font=_font(max(1, round(side * INITIALS_SIZE))), anchor="mm",
    )
    return tile


def _decode_photo(photo: bytes | None) -> Image.Image | None:
    if not photo:
        return None
    try:
        with Image.open(io.BytesIO(photo)) as img:
            return ImageOps.exif_transpose(img).convert("RGBA")
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as exc:
        log.info("Photo undecodable, using placeholder: %s", exc)
        return None


def _rounded_mask(side: int, radius: int) -> Image.Image:
    mask = Image.new("L", (side, side), 0)
    ImageDraw.Draw(mask).rounded_rectangle((0, 0, side - 1, side - 1), radius=radius, fill=255)
    return mask


# ---------------------------------------------------------------------------
# QR
# ---------------------------------------------------------------------------

def qr_image(payload: str, side: int) -> Image.Image:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    modules = np.array(qr.get_matrix(), dtype=bool)
    pixels = np.where(modules, 0, 255).astype(np.uint8)
    return Image.fromarray(pixels).resize((side, side), Image.Resampling.NEAREST).convert("RGBA")


# ---------------------------------------------------------------------------
# compose
# ---------------------------------------------------------------------------

def compose(
    fields: CredentialFields,
    photo: bytes | None,
    *,
    template: Template,
    include_qr: bool = True,
) -> ComposedCredential:
    """Render one credential onto a copy of *template*."""
    canvas = template.image.copy()
    width, height = canvas.size
    layout: dict[str, Any] = {}

    # Photo region
    size = round(width * PHOTO_SIZE)
    inset = round(size * PHOTO_INSET)
    inner = max(1, size - 2 * inset)
    radius = round(inner * PHOTO_RADIUS)
    left = (width - size) // 2
    top = round(height * PHOTO_TOP)

    picture = _decode_photo(photo)
    placeholder = picture is None
    if placeholder:
        tile = _placeholder(inner, fields.name)
    else:
        tile = ImageOps.fit(picture, (inner, inner), Image.Resampling.LANCZOS)
    canvas.paste(tile, (left + inset, top + inset), _rounded_mask(inner, radius))
    layout["photo"] = {
        "x": left + inset, "y": top + inset, "size": inner, "radius": radius,
        "placeholder": placeholder,
    }

    # Text fields
    draw = ImageDraw.Draw(canvas)
    x = round(width * TEXT_LEFT)
    max_width = round(width * TEXT_WIDTH)
    start = max(1, round(height * FONT_START))
    floor = max(1, round(height * FONT_FLOOR))
    lift = round(height * BASELINE_LIFT)
    values = fields.text_values()
    for name, fraction in BASELINES:
        text, font_size = fit_text(values[name], max_width, start, floor)
        baseline = round(height * fraction) - lift
        draw.text((x, baseline), text, fill=TEXT_COLOR, font=_font(font_size), anchor="ls")
        layout[name] = {"text": text, "font_size": font_size, "x": x, "baseline": baseline}

    if include_qr:
        side = round(width * QR_SIZE)
        margin = round(width * QR_MARGIN)
        pad = round(width * QR_PADDING)
        qx = width - margin - side
        qy = height - margin - side
        draw.rounded_rectangle(
            (qx - pad, qy - pad, qx + side + pad, qy + side + pad), radius=pad, fill="white",
        )
        canvas.paste(qr_image(fields.qr_payload(), side), (qx, qy))
        layout["qr"] = {"x": qx, "y": qy, "size": side}

    out = io.BytesIO()
    canvas.convert("RGB").save(out, format="PNG")
    return ComposedCredential(
        data=out.getvalue(), width=width, height=height, layout=layout, placeholder=placeholder,
    )
