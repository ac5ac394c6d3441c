"""
pointcloud_decoder.py — Decode LAS/LAZ point clouds into a GPU-ready buffer.

Output layout (little-endian, no padding)::

    [point_count: u32][positions: point_count * 3 * f32][colors: point_count * 3 * u8]

Coordinates are re-centred and the "up" axis remapped for a Y-up viewer::

    out.x = x - cx
    out.y = z - cz
    out.z = -(y - cy)

LAS files are parsed directly from the fixed-offset header; the centre is the
bounding-box midpoint.  LAZ files need a decompressor, so they go through an
ordered list of strategies (COPC octree levels first, then plain sequential
LAZ reading with laspy); those centre on the mean of the points actually read.
Points without RGB get a deterministic blue-to-red height ramp.
"""

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import laspy
import numpy as np

from odm_archive import ArtifactFormat
from odm_errors import PointCloudDecodeError, UnsupportedFormatError

logger = logging.getLogger("pointcloud_decoder")

DEFAULT_MAX_POINTS = 500_000

# LAS 1.0–1.3 public header block; 1.4 headers are 375 bytes
LAS_HEADER_MIN_SIZE = 227
LAS14_HEADER_SIZE = 375

# Point data formats carrying 16-bit RGB → byte offset of Red inside the record
RGB_OFFSETS: dict[int, int] = {2: 20, 3: 28, 5: 28, 7: 30, 8: 30, 10: 30}

# Colour used by the COPC strategy when the file carries no RGB
_FLAT_GRAY = 128


# ---------------------------------------------------------------------------
#  LAS header
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LasHeader:
    version_major: int
    version_minor: int
    header_size: int
    offset_to_point_data: int
    point_data_format: int
    record_length: int
    point_count: int
    scale: tuple[float, float, float]
    offset: tuple[float, float, float]
    mins: tuple[float, float, float]
    maxs: tuple[float, float, float]
    compressed: bool = False

    @property
    def center(self) -> tuple[float, float, float]:
        return tuple((lo + hi) / 2 for lo, hi in zip(self.mins, self.maxs))

    @property
    def has_rgb(self) -> bool:
        return self.point_data_format in RGB_OFFSETS

    @classmethod
    def parse(cls, buffer: bytes) -> "LasHeader":
        """Read the public header block at its documented byte offsets."""
        if len(buffer) < LAS_HEADER_MIN_SIZE:
            raise PointCloudDecodeError(
                f"LAS header truncated: {len(buffer)} bytes (need {LAS_HEADER_MIN_SIZE})")
        if bytes(buffer[:4]) != b"LASF":
            raise PointCloudDecodeError("Not a LAS file (missing LASF signature)")

        version_major, version_minor = struct.unpack_from("<BB", buffer, 24)
        header_size = struct.unpack_from("<H", buffer, 94)[0]
        offset_to_point_data = struct.unpack_from("<I", buffer, 96)[0]
        raw_format = struct.unpack_from("<B", buffer, 104)[0]
        record_length = struct.unpack_from("<H", buffer, 105)[0]
        point_count = struct.unpack_from("<I", buffer, 107)[0]
        scale = struct.unpack_from("<3d", buffer, 131)
        offset = struct.unpack_from("<3d", buffer, 155)
        max_x, min_x, max_y, min_y, max_z, min_z = struct.unpack_from("<6d", buffer, 179)

        # LAS 1.4 moves large counts to a 64-bit field and zeroes the legacy one
        if point_count == 0 and header_size >= LAS14_HEADER_SIZE and len(buffer) >= LAS14_HEADER_SIZE:
            point_count = struct.unpack_from("<Q", buffer, 247)[0]

        return cls(
            version_major=version_major,
            version_minor=version_minor,
            header_size=header_size,
            offset_to_point_data=offset_to_point_data,
            point_data_format=raw_format & 0x3F,
            record_length=record_length,
            point_count=point_count,
            scale=scale,
            offset=offset,
            mins=(min_x, min_y, min_z),
            maxs=(max_x, max_y, max_z),
            # LAZ writers flag compressed records in the top bits of the format
            compressed=bool(raw_format & 0xC0),
        )


# ---------------------------------------------------------------------------
#  Output buffer
# ---------------------------------------------------------------------------

@dataclass
class PointCloudBuffer:
    """Flat ``positions`` (float32, 3n) and ``colors`` (uint8, 3n)."""

    positions: np.ndarray
    colors: np.ndarray

    def __post_init__(self):
        self.positions = np.ascontiguousarray(self.positions, dtype=np.float32).reshape(-1)
        self.colors = np.ascontiguousarray(self.colors, dtype=np.uint8).reshape(-1)
        if self.positions.size != self.colors.size or self.positions.size % 3:
            raise ValueError(
                f"positions ({self.positions.size}) and colors ({self.colors.size}) "
                "must both hold 3 values per point")

    @property
    def point_count(self) -> int:
        return self.positions.size // 3

    def encode(self) -> bytes:
        return (struct.pack("<I", self.point_count)
                + self.positions.astype("<f4").tobytes()
                + self.colors.tobytes())

    @classmethod
    def from_bytes(cls, data: bytes) -> "PointCloudBuffer":
        count = read_point_count(data)
        expected = 4 + count * 15
        if len(data) != expected:
            raise PointCloudDecodeError(
                f"Point buffer is {len(data)} bytes, expected {expected} for {count} points")
        positions = np.frombuffer(data, dtype="<f4", count=count * 3, offset=4)
        colors = np.frombuffer(data, dtype=np.uint8, count=count * 3, offset=4 + count * 12)
        return cls(positions, colors)


def read_point_count(data: bytes) -> int:
    if len(data) < 4:
        raise PointCloudDecodeError("Point buffer shorter than its 4-byte header")
    return struct.unpack_from("<I", data, 0)[0]


# ---------------------------------------------------------------------------
#  Shared helpers
# ---------------------------------------------------------------------------

def height_ramp(z: np.ndarray, min_z: float, max_z: float) -> np.ndarray:
    """Blue (low) to red (high) colours from normalised height, shape (n, 3)."""
    z = np.asarray(z, dtype=np.float64)
    span = max_z - min_z
    if span > 0:
        t = np.clip((z - min_z) / span, 0.0, 1.0)
    else:
        t = np.zeros_like(z)
    colors = np.empty((z.size, 3), dtype=np.uint8)
    colors[:, 0] = np.floor(t * 255)
    colors[:, 1] = np.floor((1 - t) * 200 + 55)
    colors[:, 2] = np.floor((1 - t) * 255)
    return colors


def rgb16_to_rgb8(red, green, blue) -> np.ndarray:
    rgb = np.column_stack((np.asarray(red), np.asarray(green), np.asarray(blue)))
    return (rgb.astype(np.uint32) // 256).astype(np.uint8)


def to_viewer_frame(x, y, z, center) -> np.ndarray:
    """Centre on *center* and swap to Y-up; returns float32 array (n, 3)."""
    cx, cy, cz = center
    out = np.empty((len(x), 3), dtype=np.float32)
    out[:, 0] = np.asarray(x, dtype=np.float64) - cx
    out[:, 1] = np.asarray(z, dtype=np.float64) - cz
    out[:, 2] = -(np.asarray(y, dtype=np.float64) - cy)
    return out


def _mean_center(x, y, z) -> tuple[float, float, float]:
    if len(x) == 0:
        return (0.0, 0.0, 0.0)
    return (float(np.mean(x)), float(np.mean(y)), float(np.mean(z)))


# ---------------------------------------------------------------------------
#  LAS (uncompressed)
# ---------------------------------------------------------------------------

def decode_las(buffer: bytes, max_points: int = DEFAULT_MAX_POINTS) -> PointCloudBuffer:
    header = LasHeader.parse(buffer)
    logger.info("LAS header: %d points, format %d, record length %d",
                header.point_count, header.point_data_format, header.record_length)

    if header.compressed:
        raise PointCloudDecodeError("LAS header flags compressed (LAZ) point records")
    if header.record_length < 12:
        raise PointCloudDecodeError(f"Invalid point record length: {header.record_length}")
    if header.offset_to_point_data > len(buffer):
        raise PointCloudDecodeError(
            f"Point data offset {header.offset_to_point_data} lies past end of file ({len(buffer)} bytes)")

    records_present = (len(buffer) - header.offset_to_point_data) // header.record_length
    if records_present < header.point_count:
        logger.warning("LAS header announces %d points but only %d records are present",
                       header.point_count, records_present)
    count = min(header.point_count, records_present, max_points)
    if count == 0:
        return PointCloudBuffer(np.empty(0, np.float32), np.empty(0, np.uint8))

    names, formats, offsets = ["X", "Y", "Z"], ["<i4", "<i4", "<i4"], [0, 4, 8]
    rgb_offset = RGB_OFFSETS.get(header.point_data_format)
    has_rgb = rgb_offset is not None and rgb_offset + 6 <= header.record_length
    if has_rgb:
        names += ["red", "green", "blue"]
        formats += ["<u2", "<u2", "<u2"]
        offsets += [rgb_offset, rgb_offset + 2, rgb_offset + 4]
    record = np.dtype({"names": names, "formats": formats, "offsets": offsets,
                       "itemsize": header.record_length})
    points = np.frombuffer(buffer, dtype=record, count=count, offset=header.offset_to_point_data)

    sx, sy, sz = header.scale
    ox, oy, oz = header.offset
    x = points["X"] * sx + ox
    y = points["Y"] * sy + oy
    z = points["Z"] * sz + oz

    positions = to_viewer_frame(x, y, z, header.center)
    if has_rgb:
        colors = rgb16_to_rgb8(points["red"], points["green"], points["blue"])
    else:
        colors = height_ramp(z, header.mins[2], header.maxs[2])

    logger.info("Extracted %d points", count)
    return PointCloudBuffer(positions, colors)


# ---------------------------------------------------------------------------
#  LAZ strategies
# ---------------------------------------------------------------------------

def _point_columns(points, take: int | None = None):
    """Scaled x/y/z (float64) and raw RGB (or None) from a laspy point record."""
    x = np.asarray(points.x, dtype=np.float64)[:take]
    y = np.asarray(points.y, dtype=np.float64)[:take]
    z = np.asarray(points.z, dtype=np.float64)[:take]
    dims = set(points.point_format.dimension_names)
    if {"red", "green", "blue"} <= dims:
        rgb = rgb16_to_rgb8(np.asarray(points.red)[:take],
                            np.asarray(points.green)[:take],
                            np.asarray(points.blue)[:take])
    else:
        rgb = None
    return x, y, z, rgb


@runtime_checkable
class LazStrategy(Protocol):
    """One way of decompressing a LAZ file; raises on failure."""

    name: str

    def decode(self, source_path: Path, max_points: int) -> PointCloudBuffer: ...


class CopcHierarchyStrategy:
    """Read a COPC octree level by level, shallowest first.

    Stops once *max_points* are gathered or a level comes back empty.  The
    last level read is truncated to fit the cap, but laspy decodes a level as
    a whole, so peak memory follows the size of that level rather than the cap.
    """

    name = "copc"
    max_depth = 32

    def open_reader(self, source_path: Path):
        return laspy.CopcReader.open(str(source_path))

    def decode(self, source_path: Path, max_points: int) -> PointCloudBuffer:
        xs, ys, zs, colors = [], [], [], []
        total = 0
        with self.open_reader(source_path) as reader:
            logger.info("COPC file: %d total points", reader.header.point_count)
            for level in range(self.max_depth):
                if total >= max_points:
                    break
                points = reader.level_query(level)
                if len(points) == 0:
                    break
                take = min(len(points), max_points - total)
                x, y, z, rgb = _point_columns(points, take)
                if rgb is None:
                    rgb = np.full((take, 3), _FLAT_GRAY, dtype=np.uint8)
                xs.append(x)
                ys.append(y)
                zs.append(z)
                colors.append(rgb)
                total += take
                logger.debug("COPC level %d: %d point(s) taken", level, take)

        if total == 0:
            raise PointCloudDecodeError("No points found in COPC hierarchy")

        x, y, z = np.concatenate(xs), np.concatenate(ys), np.concatenate(zs)
        positions = to_viewer_frame(x, y, z, _mean_center(x, y, z))
        logger.info("Extracted %d points from COPC", total)
        return PointCloudBuffer(positions, np.concatenate(colors))


class SequentialLazStrategy:
    """Decompress the first *max_points* records of a plain LAZ file."""

    name = "sequential-laz"

    def open_reader(self, source_path: Path):
        return laspy.open(str(source_path))

    def decode(self, source_path: Path, max_points: int) -> PointCloudBuffer:
        with self.open_reader(source_path) as reader:
            header = reader.header
            count = min(header.point_count, max_points)
            logger.info("LAS/LAZ file: %d points, format %d",
                        header.point_count, header.point_format.id)
            if count == 0:
                return PointCloudBuffer(np.empty(0, np.float32), np.empty(0, np.uint8))
            points = reader.read_points(count)
            min_z, max_z = float(header.mins[2]), float(header.maxs[2])

        x, y, z, rgb = _point_columns(points)
        if rgb is None:
            rgb = height_ramp(z, min_z, max_z)
        positions = to_viewer_frame(x, y, z, _mean_center(x, y, z))
        logger.info("Extracted %d points from LAZ", len(x))
        return PointCloudBuffer(positions, rgb)


LAZ_STRATEGIES: tuple[LazStrategy, ...] = (CopcHierarchyStrategy(), SequentialLazStrategy())


def decode_laz(source_path: Path, max_points: int = DEFAULT_MAX_POINTS,
               strategies=LAZ_STRATEGIES) -> PointCloudBuffer:
    """Try each strategy in order; the first success wins."""
    logger.info("Decompressing LAZ from: %s", source_path)
    failures = []
    for strategy in strategies:
        try:
            return strategy.decode(Path(source_path), max_points)
        except Exception as exc:
            logger.info("LAZ strategy '%s' failed: %s", strategy.name, exc)
            failures.append(f"{strategy.name}: {exc}")
    raise PointCloudDecodeError("LAZ decompression failed: " + "; ".join(failures))


# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

def _decode_las_format(buffer, max_points, source_path):
    header = LasHeader.parse(buffer)
    if header.compressed and source_path is not None:
        # A .las name over compressed records; decode it as LAZ
        return decode_laz(source_path, max_points)
    return decode_las(buffer, max_points)


def _decode_laz_format(buffer, max_points, source_path):
    if source_path is None:
        raise PointCloudDecodeError("LAZ decompression requires a cached file path")
    return decode_laz(source_path, max_points)


_DECODERS = {
    ArtifactFormat.LAS: _decode_las_format,
    ArtifactFormat.LAZ: _decode_laz_format,
}


def decode(buffer: bytes, fmt: ArtifactFormat, max_points: int = DEFAULT_MAX_POINTS,
           source_path: Path | None = None) -> PointCloudBuffer:
    """Decode a point cloud file into a ``PointCloudBuffer``.

    Parameters
    ----------
    buffer : bytes
        Raw file contents (used directly for LAS).
    fmt : ArtifactFormat
        ``LAS`` or ``LAZ``.
    max_points : int
        Hard cap on emitted points; larger sources are truncated.
    source_path : Path or None
        On-disk copy of the file; the LAZ readers need a seekable path.
    """
    if max_points < 1:
        raise ValueError(f"max_points must be >= 1, got {max_points}")
    decoder = _DECODERS.get(fmt)
    if decoder is None:
        raise UnsupportedFormatError(f"No point cloud decoder for .{fmt.ext} files")
    return decoder(buffer, max_points, source_path)
