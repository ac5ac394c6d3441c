import io
import struct
import zipfile

import pytest

from odm_archive import ArchiveDirectory

# Point record length per LAS point data format
_RECORD_LENGTHS = {0: 20, 1: 28, 2: 26, 3: 34, 6: 30, 7: 36}
_RGB_OFFSETS = {2: 20, 3: 28, 7: 30}


def build_las(points, point_format=0, colors=None, scale=(0.01, 0.01, 0.01),
              offset=(0.0, 0.0, 0.0), header_count=None, las14=False, bounds=None):
    """Assemble a minimal LAS file in memory.

    *points* are world coordinates; *colors* are 16-bit (r, g, b) triples.
    """
    header_size = 375 if las14 else 227
    record_length = _RECORD_LENGTHS[point_format]
    count = len(points) if header_count is None else header_count

    if bounds is None:
        xs, ys, zs = zip(*points) if points else ((0,), (0,), (0,))
        bounds = ((min(xs), min(ys), min(zs)), (max(xs), max(ys), max(zs)))
    (min_x, min_y, min_z), (max_x, max_y, max_z) = bounds

    header = bytearray(header_size)
    header[0:4] = b"LASF"
    struct.pack_into("<BB", header, 24, 1, 4 if las14 else 2)
    struct.pack_into("<H", header, 94, header_size)
    struct.pack_into("<I", header, 96, header_size)
    struct.pack_into("<I", header, 100, 0)
    struct.pack_into("<B", header, 104, point_format)
    struct.pack_into("<H", header, 105, record_length)
    struct.pack_into("<I", header, 107, 0 if las14 else count)
    struct.pack_into("<3d", header, 131, *scale)
    struct.pack_into("<3d", header, 155, *offset)
    struct.pack_into("<6d", header, 179, max_x, min_x, max_y, min_y, max_z, min_z)
    if las14:
        struct.pack_into("<Q", header, 247, count)

    body = bytearray()
    for i, (x, y, z) in enumerate(points):
        record = bytearray(record_length)
        struct.pack_into("<3i", record, 0,
                         round((x - offset[0]) / scale[0]),
                         round((y - offset[1]) / scale[1]),
                         round((z - offset[2]) / scale[2]))
        if colors is not None:
            struct.pack_into("<3H", record, _RGB_OFFSETS[point_format], *colors[i])
        body += record
    return bytes(header + body)


def build_zip(files: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


class FakeFetcher:
    """Stands in for ArchiveFetcher; serves a fixed set of archive members."""

    def __init__(self, files=None, error=None):
        self.files = files or {}
        self.error = error
        self.calls = []

    def fetch(self, job_id):
        self.calls.append(job_id)
        if self.error is not None:
            raise self.error
        return ArchiveDirectory(build_zip(self.files))


@pytest.fixture
def make_las():
    return build_las


@pytest.fixture
def make_zip():
    return build_zip


@pytest.fixture
def fake_fetcher_cls():
    return FakeFetcher
