import struct

import laspy
import numpy as np
import pytest

import pointcloud_decoder
from odm_archive import ArtifactFormat
from odm_errors import PointCloudDecodeError, UnsupportedFormatError
from pointcloud_decoder import (
    CopcHierarchyStrategy,
    LasHeader,
    LazStrategy,
    PointCloudBuffer,
    SequentialLazStrategy,
    decode,
    decode_laz,
    height_ramp,
)


def _grid(n):
    return [(float(i), float(2 * i), float(3 * i)) for i in range(n)]


def test_parse_las_header_fields(make_las):
    data = make_las([(1.0, 2.0, 3.0), (5.0, 8.0, 13.0)], point_format=2,
                    colors=[(0, 0, 0), (0, 0, 0)], offset=(1.0, 1.0, 1.0))

    header = LasHeader.parse(data)

    assert header.point_data_format == 2
    assert header.record_length == 26
    assert header.point_count == 2
    assert header.offset_to_point_data == 227
    assert header.scale == (0.01, 0.01, 0.01)
    assert header.offset == (1.0, 1.0, 1.0)
    assert header.mins == (1.0, 2.0, 3.0)
    assert header.maxs == (5.0, 8.0, 13.0)
    assert header.center == (3.0, 5.0, 8.0)
    assert header.has_rgb is True
    assert header.compressed is False


def test_las14_header_uses_64bit_point_count(make_las):
    data = make_las(_grid(3), point_format=6, las14=True)

    header = LasHeader.parse(data)

    assert header.point_count == 3
    assert decode(data, ArtifactFormat.LAS).point_count == 3


def test_parse_rejects_short_or_foreign_buffers():
    with pytest.raises(PointCloudDecodeError, match="truncated"):
        LasHeader.parse(b"LASF" + b"\x00" * 50)
    with pytest.raises(PointCloudDecodeError, match="LASF"):
        LasHeader.parse(b"PK\x03\x04" + b"\x00" * 300)


def test_decode_las_lengths_and_wire_layout(make_las):
    data = make_las(_grid(7))

    cloud = decode(data, ArtifactFormat.LAS)
    wire = cloud.encode()

    assert cloud.point_count == 7
    assert cloud.positions.size == 3 * cloud.point_count
    assert cloud.colors.size == 3 * cloud.point_count
    assert struct.unpack_from("<I", wire, 0)[0] == 7
    assert len(wire) == 4 + 7 * 12 + 7 * 3


def test_decode_las_centers_on_bbox_and_swaps_axes(make_las):
    data = make_las([(0.0, 0.0, 0.0), (10.0, 20.0, 30.0)])

    cloud = decode(data, ArtifactFormat.LAS)
    positions = cloud.positions.reshape(-1, 3)

    np.testing.assert_allclose(positions[0], [-5.0, -15.0, 10.0], atol=1e-5)
    np.testing.assert_allclose(positions[1], [5.0, 15.0, -10.0], atol=1e-5)
    np.testing.assert_allclose(positions.mean(axis=0), [0.0, 0.0, 0.0], atol=1e-5)


def test_decode_las_applies_scale_and_offset(make_las):
    points = [(500000.25, 4000000.5, 100.0), (500010.25, 4000020.5, 110.0)]
    data = make_las(points, scale=(0.001, 0.001, 0.001), offset=(500000.0, 4000000.0, 0.0))

    positions = decode(data, ArtifactFormat.LAS).positions.reshape(-1, 3)

    np.testing.assert_allclose(positions[1] - positions[0], [10.0, 10.0, -20.0], atol=1e-3)


def test_decode_las_caps_points_at_max_points(make_las):
    data = make_las(_grid(10))

    cloud = decode(data, ArtifactFormat.LAS, max_points=4)

    assert cloud.point_count == 4
    assert len(cloud.encode()) == 4 + 4 * 15


def test_decode_las_bounds_count_by_records_present(make_las):
    data = make_las(_grid(3), header_count=5)

    assert decode(data, ArtifactFormat.LAS).point_count == 3


def test_decode_las_scales_16bit_rgb(make_las):
    data = make_las([(0.0, 0.0, 0.0), (1.0, 1.0, 1.0)], point_format=2,
                    colors=[(65535, 256, 255), (32768, 512, 0)])

    colors = decode(data, ArtifactFormat.LAS).colors.reshape(-1, 3)

    assert colors[0].tolist() == [255, 1, 0]
    assert colors[1].tolist() == [128, 2, 0]


def test_decode_las_reads_rgb_at_format3_offset(make_las):
    data = make_las([(0.0, 0.0, 0.0)], point_format=3, colors=[(1024, 2048, 4096)])

    assert decode(data, ArtifactFormat.LAS).colors.tolist() == [4, 8, 16]


def test_format0_colors_follow_normalized_height(make_las):
    data = make_las([(0.0, 0.0, 10.0), (0.0, 0.0, 50.0)], point_format=0, scale=(1.0, 1.0, 1.0))

    colors = decode(data, ArtifactFormat.LAS).colors.reshape(-1, 3)

    assert colors[0].tolist() == [0, 255, 255]
    assert colors[1].tolist() == [255, 55, 0]
    assert colors[0].tolist() != colors[1].tolist()


def test_height_colors_are_deterministic(make_las):
    data = make_las([(float(i), 0.0, float(i * i)) for i in range(20)], point_format=1)

    first = decode(data, ArtifactFormat.LAS).colors.tobytes()
    second = decode(data, ArtifactFormat.LAS).colors.tobytes()

    assert first == second


def test_height_ramp_flat_cloud_has_no_nan():
    colors = height_ramp(np.array([5.0, 5.0]), 5.0, 5.0)

    assert colors.tolist() == [[0, 255, 255], [0, 255, 255]]


def test_point_buffer_round_trip_validates_length():
    cloud = PointCloudBuffer(np.arange(6, dtype=np.float32), np.arange(6, dtype=np.uint8))
    wire = cloud.encode()

    restored = PointCloudBuffer.from_bytes(wire)

    assert restored.point_count == 2
    np.testing.assert_array_equal(restored.positions, cloud.positions)
    with pytest.raises(PointCloudDecodeError):
        PointCloudBuffer.from_bytes(wire[:-1])


def test_point_buffer_rejects_mismatched_arrays():
    with pytest.raises(ValueError):
        PointCloudBuffer(np.zeros(6, np.float32), np.zeros(3, np.uint8))


def test_decode_rejects_unsupported_format_and_bad_cap(make_las):
    with pytest.raises(UnsupportedFormatError):
        decode(b"", ArtifactFormat.PLY)
    with pytest.raises(ValueError):
        decode(make_las(_grid(2)), ArtifactFormat.LAS, max_points=0)


def test_laz_requires_source_path():
    with pytest.raises(PointCloudDecodeError, match="cached file path"):
        decode(b"", ArtifactFormat.LAZ)


# ── LAZ ──

def _write_laz(path, n, point_format=3):
    las = laspy.create(point_format=point_format, file_version="1.2")
    las.header.scales = np.array([0.5, 0.5, 0.5])
    las.header.offsets = np.array([0.0, 0.0, 0.0])
    las.x = np.arange(n, dtype=np.float64)
    las.y = np.arange(n, dtype=np.float64) * 2
    las.z = np.arange(n, dtype=np.float64) * 3
    if point_format in (2, 3):
        las.red = np.full(n, 65535, dtype=np.uint16)
        las.green = np.full(n, 512, dtype=np.uint16)
        las.blue = np.zeros(n, dtype=np.uint16)
    las.write(str(path))
    return path


def test_plain_laz_falls_back_to_sequential_reader(tmp_path):
    path = _write_laz(tmp_path / "model.laz", 10)

    cloud = decode(path.read_bytes(), ArtifactFormat.LAZ, max_points=4, source_path=path)
    positions = cloud.positions.reshape(-1, 3)

    assert cloud.point_count == 4
    assert cloud.colors.reshape(-1, 3)[0].tolist() == [255, 2, 0]
    np.testing.assert_allclose(positions.mean(axis=0), [0.0, 0.0, 0.0], atol=1e-4)
    # mean-centred x of points 0..3 is -1.5 .. 1.5; y' carries the original z
    np.testing.assert_allclose(positions[:, 0], [-1.5, -0.5, 0.5, 1.5], atol=1e-4)
    np.testing.assert_allclose(positions[:, 1], [-4.5, -1.5, 1.5, 4.5], atol=1e-4)


def test_laz_without_rgb_uses_height_ramp(tmp_path):
    path = _write_laz(tmp_path / "gray.laz", 5, point_format=1)

    colors = decode(b"", ArtifactFormat.LAZ, source_path=path).colors.reshape(-1, 3)

    assert colors[0].tolist() == [0, 255, 255]
    assert colors[-1].tolist() == [255, 55, 0]


def test_garbage_laz_reports_every_strategy(tmp_path):
    path = tmp_path / "broken.laz"
    path.write_bytes(b"not a point cloud at all")

    with pytest.raises(PointCloudDecodeError) as excinfo:
        decode(path.read_bytes(), ArtifactFormat.LAZ, source_path=path)

    assert "copc:" in str(excinfo.value)
    assert "sequential-laz:" in str(excinfo.value)


class _Stub:
    def __init__(self, name, result=None, error=None):
        self.name = name
        self.result = result
        self.error = error
        self.calls = 0

    def decode(self, source_path, max_points):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


def test_decode_laz_returns_first_successful_strategy(tmp_path):
    good = PointCloudBuffer(np.zeros(3, np.float32), np.zeros(3, np.uint8))
    failing = _Stub("first", error=RuntimeError("boom"))
    winner = _Stub("second", result=good)
    never = _Stub("third", result=None)

    result = decode_laz(tmp_path / "x.laz", 10, strategies=(failing, winner, never))

    assert result is good
    assert (failing.calls, winner.calls, never.calls) == (1, 1, 0)


# ── COPC hierarchy (fake reader) ──

class _FakeFormat:
    def __init__(self, names):
        self.dimension_names = names


class _FakePoints:
    def __init__(self, xyz, rgb=None):
        xyz = np.asarray(xyz, dtype=np.float64).reshape(-1, 3)
        self.x, self.y, self.z = xyz[:, 0], xyz[:, 1], xyz[:, 2]
        names = ["X", "Y", "Z"]
        if rgb is not None:
            rgb = np.asarray(rgb, dtype=np.uint16).reshape(-1, 3)
            self.red, self.green, self.blue = rgb[:, 0], rgb[:, 1], rgb[:, 2]
            names += ["red", "green", "blue"]
        self.point_format = _FakeFormat(names)

    def __len__(self):
        return len(self.x)


class _FakeHeader:
    point_count = 10


class _FakeCopcReader:
    def __init__(self, levels):
        self.levels = levels
        self.queried = []
        self.header = _FakeHeader()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def level_query(self, level):
        self.queried.append(level)
        if level < len(self.levels):
            return self.levels[level]
        return _FakePoints(np.empty((0, 3)))


def test_copc_reads_levels_shallowest_first_and_truncates(tmp_path, monkeypatch):
    reader = _FakeCopcReader([
        _FakePoints([[0, 0, 0], [4, 4, 4]]),
        _FakePoints([[1, 1, 1], [3, 3, 3], [9, 9, 9]]),
        _FakePoints([[7, 7, 7]] * 5),
    ])
    monkeypatch.setattr(CopcHierarchyStrategy, "open_reader", lambda self, path: reader)

    cloud = CopcHierarchyStrategy().decode(tmp_path / "m.copc.laz", max_points=4)
    positions = cloud.positions.reshape(-1, 3)

    assert cloud.point_count == 4
    assert reader.queried == [0, 1]
    np.testing.assert_allclose(positions.mean(axis=0), [0.0, 0.0, 0.0], atol=1e-5)
    np.testing.assert_allclose(positions[:, 0], [-2.0, 2.0, -1.0, 1.0], atol=1e-5)
    assert cloud.colors.tolist() == [128] * 12


def test_copc_stops_at_first_empty_level_and_keeps_rgb(tmp_path, monkeypatch):
    reader = _FakeCopcReader([_FakePoints([[0, 0, 0], [2, 2, 2]],
                                          rgb=[[65535, 0, 256], [512, 512, 512]])])
    monkeypatch.setattr(CopcHierarchyStrategy, "open_reader", lambda self, path: reader)

    cloud = CopcHierarchyStrategy().decode(tmp_path / "m.copc.laz", max_points=100)

    assert cloud.point_count == 2
    assert reader.queried == [0, 1]
    assert cloud.colors.tolist() == [255, 0, 1, 2, 2, 2]


def test_copc_with_empty_root_fails_so_next_strategy_runs(tmp_path, monkeypatch):
    monkeypatch.setattr(CopcHierarchyStrategy, "open_reader",
                        lambda self, path: _FakeCopcReader([]))
    sequential = _Stub("sequential-laz",
                       result=PointCloudBuffer(np.zeros(3, np.float32), np.zeros(3, np.uint8)))

    result = decode_laz(tmp_path / "m.laz", 10, strategies=(CopcHierarchyStrategy(), sequential))

    assert result.point_count == 1
    assert sequential.calls == 1


def test_default_strategy_order():
    names = [s.name for s in pointcloud_decoder.LAZ_STRATEGIES]

    assert names == ["copc", "sequential-laz"]
    assert isinstance(pointcloud_decoder.LAZ_STRATEGIES[1], SequentialLazStrategy)
    assert all(isinstance(s, LazStrategy) for s in pointcloud_decoder.LAZ_STRATEGIES)
    assert isinstance(_Stub("plain"), LazStrategy)
