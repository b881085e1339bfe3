"""Print-ready image normalization.

Turns AI output or stored sketches into lossless PNG data URLs:

- ``to_lossless_format`` flattens transparency onto white and re-encodes as
  PNG (download/print path).
- ``threshold_to_black_and_white`` optionally shrinks the drawing inside a
  white margin, then snaps every pixel to pure black or white so light
  pencil shading disappears and line art stays solid (generate/edit path).

Neither function raises on a bad image. A source that cannot be fetched or
decoded comes back unchanged, and a failure in the pixel stage falls back to
the margin-composited image without thresholding.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote_to_bytes

import httpx
import numpy as np
from PIL import Image

from config import settings

logger = logging.getLogger(__name__)

# Output parity with the coloring pages users already have depends on these.
LUMINANCE_THRESHOLD = 160
PRINT_MARGIN_FRACTION = 0.15
LUMA_WEIGHTS = (0.299, 0.587, 0.114)

WHITE = (255, 255, 255)
PNG_DATA_URL_PREFIX = "data:image/png;base64,"


class ImageDecodeError(Exception):
    """Raised internally when an image source cannot be turned into pixels."""


@dataclass
class DecodeResult:
    image: Optional[Image.Image] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.image is not None


def decode_data_url(source: str) -> bytes:
    """Return the raw bytes carried by a ``data:`` URI."""
    header, sep, payload = source.partition(",")
    if not sep or not header.startswith("data:"):
        raise ImageDecodeError("Malformed data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=False)
        except binascii.Error as exc:
            raise ImageDecodeError(f"Invalid base64 payload: {exc}") from exc
    return unquote_to_bytes(payload)


def _cache_busted(url: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}t={int(time.time() * 1000)}"


async def _read_limited(client: httpx.AsyncClient, url: str) -> bytes:
    limit = int(settings.IMAGE_MAX_BYTES)
    async with client.stream("GET", url) as response:
        response.raise_for_status()
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise ImageDecodeError(f"Image exceeds {limit} bytes")

        chunks = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > limit:
                raise ImageDecodeError(f"Image exceeds {limit} bytes")
            chunks.append(chunk)
    return b"".join(chunks)


async def fetch_image_bytes(source: str, client: Optional[httpx.AsyncClient] = None) -> bytes:
    """Load image bytes from a data URI or an http(s) URL, capped at ``IMAGE_MAX_BYTES``."""
    source = (source or "").strip()
    if source.startswith("data:"):
        data = decode_data_url(source)
        if len(data) > int(settings.IMAGE_MAX_BYTES):
            raise ImageDecodeError(f"Image exceeds {settings.IMAGE_MAX_BYTES} bytes")
        return data
    if not source.startswith("http://") and not source.startswith("https://"):
        raise ImageDecodeError("Image source must be a data URL or an absolute http(s) URL")

    url = _cache_busted(source)
    try:
        if client is None:
            async with httpx.AsyncClient(
                timeout=settings.IMAGE_FETCH_TIMEOUT_SECONDS,
                follow_redirects=True,
            ) as owned_client:
                return await _read_limited(owned_client, url)
        return await _read_limited(client, url)
    except (httpx.InvalidURL, httpx.StreamError) as exc:
        # Neither is an HTTPError subclass.
        raise ImageDecodeError(f"{type(exc).__name__}: {exc}") from exc


def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


async def load_image(source: str, client: Optional[httpx.AsyncClient] = None) -> DecodeResult:
    """Fetch and decode ``source``, keeping the failure reason instead of raising."""
    try:
        data = await fetch_image_bytes(source, client=client)
        image = await asyncio.to_thread(open_image, data)
    except (ImageDecodeError, httpx.HTTPError, OSError, ValueError, Image.DecompressionBombError) as exc:
        return DecodeResult(error=f"{type(exc).__name__}: {exc}")
    return DecodeResult(image=image)


def _has_alpha(image: Image.Image) -> bool:
    return "A" in image.getbands() or "transparency" in image.info


def flatten_onto_white(image: Image.Image) -> Image.Image:
    """Composite onto an opaque white background."""
    background = Image.new("RGBA", image.size, WHITE + (255,))
    background.alpha_composite(image.convert("RGBA"))
    return background.convert("RGB")


def compose_with_margin(image: Image.Image, margin_fraction: float) -> Image.Image:
    """Draw ``image`` onto a same-sized canvas, shrunk by ``1 - margin_fraction``.

    With no margin the source is kept 1:1 and its alpha channel survives; with
    a margin the drawing is centered on white and the result is opaque.
    """
    if margin_fraction <= 0:
        return image.convert("RGBA") if _has_alpha(image) else image.convert("RGB")

    width, height = image.size
    scale = 1.0 - margin_fraction
    scaled_width = max(int(round(width * scale)), 1)
    scaled_height = max(int(round(height * scale)), 1)
    offset_x = (width - scaled_width) // 2
    offset_y = (height - scaled_height) // 2

    canvas = Image.new("RGBA", (width, height), WHITE + (255,))
    scaled = image.convert("RGBA").resize((scaled_width, scaled_height), Image.Resampling.LANCZOS)
    canvas.alpha_composite(scaled, dest=(offset_x, offset_y))
    return canvas.convert("RGB")


def binarize(image: Image.Image) -> Image.Image:
    """Snap R, G and B to 0 or 255 by BT.601 luminance; alpha is left alone."""
    pixels = np.array(image, dtype=np.uint8)
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ValueError(f"Expected an RGB or RGBA image, got mode {image.mode}")

    if pixels.shape[2] == 4:
        # Canvas readback is premultiplied: fully transparent pixels read as black.
        pixels[pixels[:, :, 3] == 0, :3] = 0

    rgb = pixels[:, :, :3].astype(np.float64)
    r_weight, g_weight, b_weight = LUMA_WEIGHTS
    luma = r_weight * rgb[:, :, 0] + g_weight * rgb[:, :, 1] + b_weight * rgb[:, :, 2]
    value = np.where(luma < LUMINANCE_THRESHOLD, 0, 255).astype(np.uint8)

    pixels[:, :, 0] = value
    pixels[:, :, 1] = value
    pixels[:, :, 2] = value
    return Image.fromarray(pixels)


def encode_png_data_url(image: Image.Image) -> str:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return PNG_DATA_URL_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")


def _validate_margin(margin_fraction: float) -> float:
    fraction = float(margin_fraction)
    if not 0.0 <= fraction < 1.0:
        raise ValueError("margin_fraction must be in [0, 1)")
    return fraction


def _render_lossless(image: Image.Image, source: str) -> str:
    try:
        return encode_png_data_url(flatten_onto_white(image))
    except (OSError, ValueError) as exc:
        logger.warning("Lossless conversion failed, returning original source: %s", exc)
        return source


def _render_threshold(image: Image.Image, margin_fraction: float, source: str) -> str:
    try:
        composed = compose_with_margin(image, margin_fraction)
    except (OSError, ValueError) as exc:
        logger.warning("Could not compose image, returning original source: %s", exc)
        return source

    try:
        binary = binarize(composed)
    except (ValueError, TypeError, MemoryError) as exc:
        logger.warning("Pixel thresholding failed, returning margin-only image: %s", exc)
        return encode_png_data_url(composed)
    return encode_png_data_url(binary)


async def to_lossless_format(source: str, *, client: Optional[httpx.AsyncClient] = None) -> str:
    """Flatten transparency onto white and re-encode as a PNG data URL."""
    decoded = await load_image(source, client=client)
    if not decoded.ok:
        logger.warning("Failed to load image for lossless conversion: %s", decoded.error)
        return source
    return await asyncio.to_thread(_render_lossless, decoded.image, source)


async def threshold_to_black_and_white(
    source: str,
    margin_fraction: float = 0.0,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Binarize ``source`` into a PNG data URL, optionally inside a white margin.

    Use ``margin_fraction=0`` for edits so repeated passes do not keep
    shrinking the drawing.
    """
    fraction = _validate_margin(margin_fraction)
    decoded = await load_image(source, client=client)
    if not decoded.ok:
        logger.warning("Failed to load image for thresholding: %s", decoded.error)
        return source
    return await asyncio.to_thread(_render_threshold, decoded.image, fraction, source)


async def post_process_generated_image(
    source: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """First-generation path: standard print margin, then threshold."""
    return await threshold_to_black_and_white(source, PRINT_MARGIN_FRACTION, client=client)
