import struct

import numpy as np
import pytest

from spz.packed import PackOptions, UnpackOptions
from spz.ply import load_splat_from_ply, save_splat_to_ply
from spz.splat_types import CoordinateSystem, GaussianCloud, SpzError


def _cloud(sh_degree=1):
    n = 2
    sh_count = {0: 0, 1: 9, 2: 24, 3: 45}[sh_degree]
    return GaussianCloud(
        num_points=n,
        sh_degree=sh_degree,
        positions=[0.5, -1.25, 2.0, 3.0, 0.25, -0.75],
        scales=[-1.0, -2.0, -3.0, 0.5, 0.0, -0.5],
        rotations=[0.1, 0.2, 0.3, 0.9, -0.4, 0.5, 0.1, 0.7],
        alphas=[0.3, -1.5],
        colors=[0.1, 0.2, 0.3, -0.4, 0.5, 0.6],
        sh=np.linspace(-0.5, 0.5, n * sh_count),
    )


def _body(path):
    data = path.read_bytes()
    marker = b"end_header\n"
    header, rest = data.split(marker, 1)
    return header.decode("ascii").split("\n"), np.frombuffer(rest, dtype="<f4")


def _write_ply(path, names, rows, count=None):
    header = ["ply", "format binary_little_endian 1.0", f"element vertex {count or len(rows)}"]
    header += [f"property float {name}" for name in names]
    header.append("end_header")
    body = b"".join(struct.pack(f"<{len(row)}f", *row) for row in rows)
    path.write_bytes(("\n".join(header) + "\n").encode() + body)


_REQUIRED = ["x", "y", "z", "scale_0", "scale_1", "scale_2",
             "rot_0", "rot_1", "rot_2", "rot_3", "opacity", "f_dc_0", "f_dc_1", "f_dc_2"]


@pytest.mark.parametrize("sh_degree", [0, 1, 2, 3])
def test_round_trip_unspecified(tmp_path, sh_degree):
    cloud = _cloud(sh_degree)
    path = tmp_path / "cloud.ply"
    save_splat_to_ply(cloud, PackOptions(), path)
    loaded = load_splat_from_ply(path, UnpackOptions())
    assert loaded.num_points == cloud.num_points
    assert loaded.sh_degree == sh_degree
    for name in ("positions", "scales", "rotations", "alphas", "colors", "sh"):
        np.testing.assert_array_equal(getattr(loaded, name), getattr(cloud, name))


def test_round_trip_rub(tmp_path):
    cloud = _cloud(2)
    path = tmp_path / "cloud.ply"
    save_splat_to_ply(cloud, PackOptions(CoordinateSystem.RUB), path)
    loaded = load_splat_from_ply(path, UnpackOptions(CoordinateSystem.RUB))
    for name in ("positions", "rotations", "sh"):
        np.testing.assert_array_equal(getattr(loaded, name), getattr(cloud, name))


def test_header_layout(tmp_path):
    path = tmp_path / "cloud.ply"
    save_splat_to_ply(_cloud(1), None, path)
    lines, values = _body(path)
    assert lines[:3] == ["ply", "format binary_little_endian 1.0", "element vertex 2"]
    props = [line.split()[-1] for line in lines[3:] if line]
    assert props[:9] == ["x", "y", "z", "nx", "ny", "nz", "f_dc_0", "f_dc_1", "f_dc_2"]
    assert props[9:18] == [f"f_rest_{i}" for i in range(9)]
    assert props[18:] == ["opacity", "scale_0", "scale_1", "scale_2",
                          "rot_0", "rot_1", "rot_2", "rot_3"]
    assert values.size == 2 * len(props)


def test_body_columns_and_zero_normals(tmp_path):
    cloud = _cloud(0)
    path = tmp_path / "cloud.ply"
    save_splat_to_ply(cloud, PackOptions(), path)
    _, values = _body(path)
    rows = values.reshape(2, 17)
    np.testing.assert_array_equal(rows[:, 0:3], cloud.positions.reshape(2, 3))
    assert np.all(rows[:, 3:6] == 0)
    np.testing.assert_array_equal(rows[:, 13], cloud.rotations.reshape(2, 4)[:, 3])
    np.testing.assert_array_equal(rows[:, 14:17], cloud.rotations.reshape(2, 4)[:, :3])


def test_save_from_rub_flips_y_and_z(tmp_path):
    cloud = _cloud(0)
    path = tmp_path / "cloud.ply"
    save_splat_to_ply(cloud, PackOptions(CoordinateSystem.RUB), path)
    _, values = _body(path)
    rows = values.reshape(2, 17)
    pos = cloud.positions.reshape(2, 3)
    np.testing.assert_array_equal(rows[:, 0], pos[:, 0])
    np.testing.assert_array_equal(rows[:, 1], -pos[:, 1])
    np.testing.assert_array_equal(rows[:, 2], -pos[:, 2])
    rot = cloud.rotations.reshape(2, 4)
    np.testing.assert_array_equal(rows[:, 14], rot[:, 0])
    np.testing.assert_array_equal(rows[:, 15], -rot[:, 1])


def test_load_reorders_fields_and_sh(tmp_path):
    names = _REQUIRED + [f"f_rest_{i}" for i in range(9)]
    row = [float(i) for i in range(len(names))]
    path = tmp_path / "manual.ply"
    _write_ply(path, names, [row])
    cloud = load_splat_from_ply(path)
    assert cloud.sh_degree == 1
    np.testing.assert_array_equal(cloud.positions, [0, 1, 2])
    np.testing.assert_array_equal(cloud.rotations, [7, 8, 9, 6])
    np.testing.assert_array_equal(cloud.alphas, [10])
    # f_rest values 14..22 are [channel, coeff]; the cloud stores [coeff, channel].
    np.testing.assert_array_equal(cloud.sh, [14, 17, 20, 15, 18, 21, 16, 19, 22])


def test_load_to_rub_flips(tmp_path):
    path = tmp_path / "manual.ply"
    row = [1.0] * len(_REQUIRED)
    _write_ply(path, _REQUIRED, [row])
    cloud = load_splat_from_ply(path, UnpackOptions(CoordinateSystem.RUB))
    np.testing.assert_array_equal(cloud.positions, [1, -1, -1])
    np.testing.assert_array_equal(cloud.rotations, [1, -1, -1, 1])


def test_not_ply(tmp_path):
    path = tmp_path / "bad.ply"
    path.write_bytes(b"plx\n")
    with pytest.raises(SpzError, match="not a .ply"):
        load_splat_from_ply(path)


def test_unsupported_format(tmp_path):
    path = tmp_path / "bad.ply"
    path.write_bytes(b"ply\nformat ascii 1.0\n")
    with pytest.raises(SpzError, match="unsupported .ply format"):
        load_splat_from_ply(path)


def test_missing_vertex_count(tmp_path):
    path = tmp_path / "bad.ply"
    path.write_bytes(b"ply\nformat binary_little_endian 1.0\nelement face 3\n")
    with pytest.raises(SpzError, match="missing vertex count"):
        load_splat_from_ply(path)


def test_zero_vertex_count(tmp_path):
    path = tmp_path / "bad.ply"
    _write_ply(path, _REQUIRED, [], count=0)
    with pytest.raises(SpzError, match="invalid vertex count"):
        load_splat_from_ply(path)


def test_unsupported_property_type(tmp_path):
    path = tmp_path / "bad.ply"
    path.write_bytes(
        b"ply\nformat binary_little_endian 1.0\nelement vertex 1\nproperty uchar red\nend_header\n"
    )
    with pytest.raises(SpzError, match="unsupported property data type"):
        load_splat_from_ply(path)


def test_missing_field(tmp_path):
    path = tmp_path / "bad.ply"
    names = [name for name in _REQUIRED if name != "opacity"]
    _write_ply(path, names, [[0.0] * len(names)])
    with pytest.raises(SpzError, match="Missing field: opacity"):
        load_splat_from_ply(path)


def test_truncated_data(tmp_path):
    path = tmp_path / "bad.ply"
    _write_ply(path, _REQUIRED, [[0.0] * len(_REQUIRED)], count=2)
    with pytest.raises(SpzError, match="Unable to load data"):
        load_splat_from_ply(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_splat_from_ply(tmp_path / "absent.ply")


def test_save_rejects_mismatched_sizes(tmp_path):
    cloud = _cloud(0)
    cloud.alphas = np.zeros(3, dtype=np.float32)
    path = tmp_path / "out.ply"
    with pytest.raises(SpzError, match="alphas"):
        save_splat_to_ply(cloud, PackOptions(), path)
    assert not path.exists()