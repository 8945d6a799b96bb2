"""Perceptual (average) hashing and Hamming distance helpers."""

from __future__ import annotations

import re
from io import BytesIO
from typing import TYPE_CHECKING, Any, Literal, Union, cast

from PIL import Image

from .config import DEFAULT_PHASH_GRID

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from PIL.Image import Resampling
else:  # Pillow < 10 compatibility where Resampling lives on Image
    Resampling = Any


LanczosType = Union["Resampling", Literal[0, 1, 2, 3, 4, 5]]

_NON_HEX_RE = re.compile(r"[^0-9a-f]")


def _lanczos_filter() -> LanczosType:
    resampling: Any = getattr(Image, "Resampling", None)
    if resampling is not None:
        return cast(LanczosType, getattr(resampling, "LANCZOS"))
    return cast(LanczosType, getattr(Image, "LANCZOS"))


def average_hash_image(im: Image.Image, *, grid: int = DEFAULT_PHASH_GRID) -> str:
    """Return the average hash of an already decoded image as zero-padded hex.

    The image is downscaled to ``grid x grid``, alpha is dropped, the result is
    converted to grayscale, and each sample contributes one bit (``1`` when it
    is strictly brighter than the mean) in raster order.
    """

    if grid < 1:
        raise ValueError("grid must be >= 1")
    if im.mode not in ("RGB", "RGBA", "L", "LA"):
        im = im.convert("RGBA")
    small = im.resize((grid, grid), resample=_lanczos_filter())
    if small.mode == "RGBA":
        small = small.convert("RGB")
    gray = small.convert("L")
    pixels = list(gray.getdata())
    avg = sum(pixels) / len(pixels)
    bits = "".join("1" if p > avg else "0" for p in pixels)
    width = (len(bits) + 3) // 4
    return f"{int(bits, 2):0{width}x}"


def average_hash(image_bytes: bytes, *, grid: int = DEFAULT_PHASH_GRID) -> str:
    """Decode ``image_bytes`` and compute its average hash."""

    with Image.open(BytesIO(image_bytes)) as im:
        im.load()
        return average_hash_image(im, grid=grid)


def normalize_hex(value: str | None) -> str | None:
    """Lowercase a hex digest and strip any ``0x`` prefix or separators."""

    if not value or not isinstance(value, str):
        return None
    s = value.strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    s = _NON_HEX_RE.sub("", s)
    return s or None


def hamming_distance(a: str | None, b: str | None) -> int | None:
    """Count differing bits between two hex digests.

    The shorter digest is treated as left-padded with zero bits up to the
    longer one's width. Returns ``None`` when either side is empty.
    """

    na = normalize_hex(a)
    nb = normalize_hex(b)
    if na is None or nb is None:
        return None
    return (int(na, 16) ^ int(nb, 16)).bit_count()


__all__ = ["average_hash", "average_hash_image", "hamming_distance", "normalize_hex"]
