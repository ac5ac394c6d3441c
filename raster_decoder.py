"""
raster_decoder.py — Turn orthophoto rasters into browser-displayable PNG.

TIFF input goes through Pillow first.  When Pillow cannot handle the file
(GeoTIFF compressions such as LERC/ZSTD, odd sample layouts, tiled BigTIFF)
the bands are read with rasterio instead and rebuilt into an RGBA buffer.
Both paths emit 8-bit RGBA PNG so callers never need to know which one ran.
"""

import io
import logging
import warnings

import numpy as np
from PIL import Image

from odm_archive import ArtifactFormat
from odm_errors import RasterDecodeError, UnsupportedFormatError

logger = logging.getLogger("raster_decoder")

PNG_COMPRESS_LEVEL = 6

# Pillow modes whose samples do not fit in 8 bits
_WIDE_MODES = {"I", "I;16", "I;16B", "I;16L", "I;16N", "F"}


def _to_uint8(arr: np.ndarray) -> np.ndarray:
    """Scale samples into 0..255 (8-bit input is returned unchanged)."""
    if arr.dtype == np.uint8:
        return arr
    integral = np.issubdtype(arr.dtype, np.integer)
    arr = np.nan_to_num(arr.astype(np.float64), nan=0.0, posinf=0.0, neginf=0.0)
    arr = np.clip(arr, 0, None)
    peak = arr.max() if arr.size else 0
    if peak <= 0:
        return np.zeros(arr.shape, dtype=np.uint8)
    if peak <= 255 and integral:
        return arr.astype(np.uint8)
    return np.floor(arr / peak * 255).astype(np.uint8)


def bands_to_rgba(bands: np.ndarray) -> np.ndarray:
    """Build an (H, W, 4) uint8 array from a (bands, H, W) raster.

    1 band → gray, 2 bands → gray + alpha, 3 bands → RGB, 4+ bands → RGBA
    (extra bands ignored).  Missing alpha is fully opaque.
    """
    if bands.ndim == 2:
        bands = bands[np.newaxis]
    count, height, width = bands.shape
    if count == 0:
        raise ValueError("raster has no bands")

    color = _to_uint8(bands[:3] if count >= 3 else bands[:1])
    rgba = np.empty((height, width, 4), dtype=np.uint8)
    if count >= 3:
        rgba[..., 0] = color[0]
        rgba[..., 1] = color[1]
        rgba[..., 2] = color[2]
    else:
        rgba[..., 0] = rgba[..., 1] = rgba[..., 2] = color[0]

    alpha_band = 3 if count >= 4 else (1 if count == 2 else None)
    if alpha_band is None:
        rgba[..., 3] = 255
    else:
        rgba[..., 3] = _to_uint8(bands[alpha_band])
    return rgba


def _encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
    return buf.getvalue()


def _decode_with_pillow(data: bytes) -> bytes:
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if img.mode in _WIDE_MODES:
            gray = _to_uint8(np.asarray(img))
            rgba = bands_to_rgba(gray[np.newaxis])
            return _encode_png(Image.fromarray(rgba))
        return _encode_png(img.convert("RGBA"))


def _decode_with_rasterio(data: bytes) -> bytes:
    from rasterio.errors import NotGeoreferencedWarning
    from rasterio.io import MemoryFile

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NotGeoreferencedWarning)
        with MemoryFile(data) as memfile:
            with memfile.open() as src:
                logger.info("GeoTIFF fallback: %dx%d, %d band(s), %s",
                            src.width, src.height, src.count, src.dtypes[0])
                bands = src.read()
    rgba = bands_to_rgba(bands)
    return _encode_png(Image.fromarray(rgba))


def decode(tiff_bytes: bytes) -> bytes:
    """Convert TIFF/GeoTIFF bytes to RGBA PNG bytes."""
    logger.info("Converting TIFF to PNG (%d bytes)", len(tiff_bytes))
    try:
        png = _decode_with_pillow(tiff_bytes)
        logger.info("Converted to PNG: %d bytes", len(png))
        return png
    except Exception as primary_exc:
        logger.warning("Pillow TIFF conversion failed (%s), trying rasterio fallback", primary_exc)
        try:
            png = _decode_with_rasterio(tiff_bytes)
        except Exception as fallback_exc:
            raise RasterDecodeError(
                "Could not decode orthophoto raster "
                f"(tried Pillow TIFF: {primary_exc}; rasterio GeoTIFF: {fallback_exc})"
            ) from fallback_exc
        logger.info("GeoTIFF converted to PNG: %d bytes", len(png))
        return png


def _passthrough(data: bytes) -> bytes:
    return data


def _jpeg_to_png(data: bytes) -> bytes:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return _encode_png(img.convert("RGBA"))
    except Exception as exc:
        raise RasterDecodeError(f"Could not decode orthophoto JPEG: {exc}") from exc


_TO_PNG = {
    ArtifactFormat.PNG: _passthrough,
    ArtifactFormat.JPG: _jpeg_to_png,
    ArtifactFormat.TIF: decode,
}


def to_png(data: bytes, fmt: ArtifactFormat) -> bytes:
    """Return PNG bytes for an orthophoto stored as *fmt*."""
    converter = _TO_PNG.get(fmt)
    if converter is None:
        raise UnsupportedFormatError(f"No raster decoder for .{fmt.ext} files")
    return converter(data)
