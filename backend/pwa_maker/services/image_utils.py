"""Icon image utilities using CairoSVG and Pillow.

Provides:
- SVG detection by URL path
- SVG rasterization to a square transparent PNG (launcher icon size)
- Image dimension extraction
"""

from __future__ import annotations

import io
import logging
from typing import Tuple
from urllib.parse import urlsplit

from PIL import Image

logger = logging.getLogger(__name__)

# Constants
ICON_SIZE = 512  # Launcher icon edge in pixels


def is_svg_url(url: str) -> bool:
    """Check whether a URL's path ends in .svg (case-insensitive).

    Args:
        url: Absolute URL.

    Returns:
        True for SVG paths, False otherwise (including unparseable URLs).
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if not parts.scheme or not parts.netloc:
        return False
    return parts.path.lower().endswith(".svg")


def get_image_dimensions(data: bytes) -> Tuple[int, int]:
    """Extract width and height from image bytes.

    Raises:
        ValueError: If data is not a valid image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size  # (width, height)
    except Exception as e:
        raise ValueError(f"Cannot read image dimensions: {e}") from e


def fit_to_square(data: bytes, size: int = ICON_SIZE) -> bytes:
    """Scale an image to fit a size x size canvas, centered on transparency.

    Aspect ratio is preserved; the shorter side is letterboxed.

    Args:
        data: Raw image bytes.
        size: Edge of the output square in pixels.

    Returns:
        PNG bytes.

    Raises:
        ValueError: If input is not a valid image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGBA")
            width, height = img.size
            ratio = min(size / width, size / height)
            new_size = (max(1, round(width * ratio)), max(1, round(height * ratio)))
            if new_size != img.size:
                img = img.resize(new_size, Image.Resampling.LANCZOS)
                logger.debug(f"Resized icon from {width}x{height} to {new_size[0]}x{new_size[1]}")

            canvas = Image.new("RGBA", (size, size), (0, 0, 0, 0))
            offset = ((size - new_size[0]) // 2, (size - new_size[1]) // 2)
            canvas.paste(img, offset, mask=img)

            output = io.BytesIO()
            canvas.save(output, format="PNG", optimize=True)
            return output.getvalue()
    except Exception as e:
        raise ValueError(f"Cannot convert icon: {e}") from e


def rasterize_svg(data: bytes, size: int = ICON_SIZE) -> bytes:
    """Render SVG bytes to a size x size transparent PNG.

    The longer side of the drawing is rendered at `size`, then the result is
    padded to a square with `fit_to_square`.

    Raises:
        ValueError: If the SVG cannot be rendered.
    """
    # CairoSVG loads the native cairo library at import time
    import cairosvg

    try:
        rendered = cairosvg.svg2png(bytestring=data, output_width=size)
    except Exception as e:
        raise ValueError(f"Cannot render SVG icon: {e}") from e

    width, height = get_image_dimensions(rendered)
    if height > width:
        # Tall drawings: render again constrained by height
        try:
            rendered = cairosvg.svg2png(bytestring=data, output_height=size)
        except Exception as e:
            raise ValueError(f"Cannot render SVG icon: {e}") from e

    return fit_to_square(rendered, size)
