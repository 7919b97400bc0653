"""Deterministic cover composition with PIL.

The generated image never contains the title: this module is the only place
title meets image. Layout is fixed:

    1600x2560 canvas (image scaled to fill, then centre-cropped)
    title:  top safe zone (top 120, height 400, 100px side padding)
    author: upper-cased, 48px, 120px above the bottom edge

Text colour follows the image: a bright dominant colour gets dark text,
anything else (including an unreadable image) gets light text.
"""

import io
from collections.abc import Sequence
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from chronicle.utils.logging import get_logger

log = get_logger(__name__)

COVER_WIDTH = 1600
COVER_HEIGHT = 2560

TITLE_ZONE_TOP = 120
TITLE_ZONE_HEIGHT = 400
TITLE_ZONE_PADDING_X = 100

AUTHOR_ZONE_BOTTOM = 120
AUTHOR_FONT_SIZE = 48

LIGHT_TEXT = (255, 255, 255, 255)  # #FFFFFF
DARK_TEXT = (26, 26, 26, 255)  # #1A1A1A
SHADOW_FOR_LIGHT_TEXT = (0, 0, 0, 77)  # rgba(0,0,0,0.3)
SHADOW_FOR_DARK_TEXT = (255, 255, 255, 51)  # rgba(255,255,255,0.2)
SHADOW_OFFSET_Y = 2
SHADOW_BLUR_RADIUS = 4

GENRE_FONTS = {
    "literary_fiction": "serif",
    "contemporary": "sans",
    "experimental": "mono",
    "thriller": "sans",
    "mystery": "serif",
    "romance": "serif",
    "scifi": "sans",
    "fantasy": "serif",
    "horror": "serif",
    "default": "serif",
}

FONT_FILES = {
    "serif": ("DejaVuSerif.ttf", "LiberationSerif-Regular.ttf", "Georgia.ttf", "Times New Roman.ttf"),
    "sans": ("DejaVuSans.ttf", "LiberationSans-Regular.ttf", "Arial.ttf", "Helvetica.ttc"),
    "mono": ("DejaVuSansMono.ttf", "LiberationMono-Regular.ttf", "Menlo.ttc", "Courier New.ttf"),
}


@dataclass
class ImageAnalysis:
    dominant_color: tuple[int, int, int] | None


def font_style_for_genre(genre: str | None) -> str:
    return GENRE_FONTS.get(genre or "default", GENRE_FONTS["default"])


def title_font_size(title: str) -> int:
    """Font size for a title, shrinking as it gets longer."""
    length = len(title)
    if length > 30:
        return 80
    if length > 20:
        return 100
    if length > 10:
        return 110
    return 120


def max_chars_per_line(font_size: int) -> int:
    return int((COVER_WIDTH - TITLE_ZONE_PADDING_X * 2) // (font_size * 0.5))


def wrap_text(text: str, max_chars: int) -> list[str]:
    """Greedy word wrap. A single word longer than ``max_chars`` keeps its own line."""
    if len(text) <= max_chars:
        return [text]

    lines: list[str] = []
    current = ""
    for word in text.split(" "):
        candidate = f"{current} {word}".strip()
        if len(candidate) <= max_chars:
            current = candidate
        else:
            if current:
                lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def luminance(color: Sequence[int]) -> float:
    r, g, b = color[0], color[1], color[2]
    return (r * 299 + g * 587 + b * 114) / 1000


def choose_text_color(analysis: ImageAnalysis) -> str:
    """'dark' for bright images, 'light' otherwise."""
    if analysis.dominant_color is None:
        return "light"
    return "dark" if luminance(analysis.dominant_color) > 128 else "light"


def analyze_image(image_bytes: bytes) -> ImageAnalysis:
    """Find the dominant colour by palette quantization of a thumbnail."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            small = img.convert("RGB")
            small.thumbnail((64, 64))
            quantized = small.quantize(colors=8)
            colors = quantized.getcolors() or []
            if not colors:
                return ImageAnalysis(dominant_color=None)
            _count, index = max(colors)
            palette = quantized.getpalette() or []
            r, g, b = palette[index * 3 : index * 3 + 3]
            return ImageAnalysis(dominant_color=(r, g, b))
    except Exception as e:
        log.warning("cover_image_analysis_failed", error=str(e))
        return ImageAnalysis(dominant_color=None)


def load_font(style: str, size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for filename in FONT_FILES.get(style, FONT_FILES["serif"]):
        try:
            return ImageFont.truetype(filename, size)
        except OSError:
            continue
    log.debug("cover_font_fallback", style=style, size=size)
    return ImageFont.load_default(size=size)


def resize_to_cover(image: Image.Image) -> Image.Image:
    """Scale to fill 1600x2560, then centre-crop the overflow."""
    width, height = image.size
    scale = max(COVER_WIDTH / width, COVER_HEIGHT / height)
    new_width = max(COVER_WIDTH, round(width * scale))
    new_height = max(COVER_HEIGHT, round(height * scale))
    resized = image.resize((new_width, new_height), Image.Resampling.LANCZOS)

    left = (new_width - COVER_WIDTH) // 2
    top = (new_height - COVER_HEIGHT) // 2
    return resized.crop((left, top, left + COVER_WIDTH, top + COVER_HEIGHT))


def _draw_centered(
    draw: ImageDraw.ImageDraw,
    text: str,
    center_y: float,
    font: ImageFont.FreeTypeFont | ImageFont.ImageFont,
    fill: tuple[int, int, int, int],
    offset_y: int = 0,
) -> None:
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    x = (COVER_WIDTH - (right - left)) / 2 - left
    y = center_y - (bottom - top) / 2 - top + offset_y
    draw.text((x, y), text, font=font, fill=fill)


def compose_cover(
    image_bytes: bytes,
    title: str,
    author: str | None = None,
    genre: str | None = None,
    text_color: str | None = None,
) -> bytes:
    """Render title and author onto the image and return PNG bytes.

    Args:
        image_bytes: Generated image (any PIL-readable format).
        title: Book title.
        author: Optional author line (upper-cased on the cover).
        genre: Genre key for the font table.
        text_color: Force "light" or "dark" instead of analysing the image.

    Raises:
        PIL.UnidentifiedImageError: If the image bytes cannot be decoded.
    """
    with Image.open(io.BytesIO(image_bytes)) as source:
        base = resize_to_cover(source.convert("RGBA"))

    if text_color is None:
        buffer = io.BytesIO()
        base.convert("RGB").save(buffer, format="PNG")
        text_color = choose_text_color(analyze_image(buffer.getvalue()))

    fill = LIGHT_TEXT if text_color == "light" else DARK_TEXT
    shadow_fill = SHADOW_FOR_LIGHT_TEXT if text_color == "light" else SHADOW_FOR_DARK_TEXT

    style = font_style_for_genre(genre)
    size = title_font_size(title)
    title_font = load_font(style, size)
    lines = wrap_text(title, max_chars_per_line(size))

    line_height = size * 1.2
    title_center = TITLE_ZONE_TOP + TITLE_ZONE_HEIGHT / 2
    placements = [
        (line, title_center + i * line_height - (len(lines) - 1) * line_height / 2)
        for i, line in enumerate(lines)
    ]

    author_font = load_font(style, AUTHOR_FONT_SIZE) if author else None
    author_center = COVER_HEIGHT - AUTHOR_ZONE_BOTTOM - AUTHOR_FONT_SIZE / 2

    shadow = Image.new("RGBA", base.size, (0, 0, 0, 0))
    shadow_draw = ImageDraw.Draw(shadow)
    text_layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    text_draw = ImageDraw.Draw(text_layer)

    for line, center_y in placements:
        _draw_centered(shadow_draw, line, center_y, title_font, shadow_fill, SHADOW_OFFSET_Y)
        _draw_centered(text_draw, line, center_y, title_font, fill)

    if author and author_font is not None:
        author_line = author.upper()
        _draw_centered(shadow_draw, author_line, author_center, author_font, shadow_fill, SHADOW_OFFSET_Y)
        _draw_centered(text_draw, author_line, author_center, author_font, fill[:3] + (230,))

    shadow = shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR_RADIUS))
    cover = Image.alpha_composite(Image.alpha_composite(base, shadow), text_layer)

    output = io.BytesIO()
    cover.convert("RGB").save(output, format="PNG")
    return output.getvalue()
