"""Reading and writing Gaussian splats as binary little-endian PLY files."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import BinaryIO, Union

import numpy as np

from spz.packed import PackOptions, UnpackOptions
from spz.splat_types import (
    CoordinateSystem,
    GaussianCloud,
    SpzError,
    coordinate_converter,
    degree_for_dim,
)

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)

MAX_PLY_POINTS = 10 * 1024 * 1024
MAX_SH_COEFFICIENTS = 45

_FORMAT_LINE = "format binary_little_endian 1.0"
_VERTEX_PREFIX = "element vertex "
_PROPERTY_PREFIX = "property float "
_COUNT_PATTERN = re.compile(r"\s*([+-]?\d+)")

_POSITION_FIELDS = ("x", "y", "z")
_SCALE_FIELDS = ("scale_0", "scale_1", "scale_2")
_ROTATION_FIELDS = ("rot_1", "rot_2", "rot_3", "rot_0")  # stored as x, y, z, w
_ALPHA_FIELDS = ("opacity",)
_COLOR_FIELDS = ("f_dc_0", "f_dc_1", "f_dc_2")


def _read_line(stream: BinaryIO) -> str:
    line = stream.readline()
    if line.endswith(b"\n"):
        line = line[:-1]
    return line.decode("latin-1")


def _parse_vertex_count(line: str, filename: PathLike) -> int:
    if not line.startswith(_VERTEX_PREFIX):
        raise SpzError(f"{filename}: missing vertex count")
    match = _COUNT_PATTERN.match(line[len(_VERTEX_PREFIX):])
    if match is None:
        raise SpzError(f"{filename}: invalid vertex count: {line!r}")
    count = int(match.group(1))
    if count <= 0 or count > MAX_PLY_POINTS:
        raise SpzError(f"{filename}: invalid vertex count: {count}")
    return count


def _read_fields(stream: BinaryIO, filename: PathLike) -> dict[str, int]:
    fields: dict[str, int] = {}
    i = 0
    while True:
        line = _read_line(stream)
        if line == "end_header":
            return fields
        if not line.startswith(_PROPERTY_PREFIX):
            raise SpzError(f"{filename}: unsupported property data type: {line}")
        fields[line[len(_PROPERTY_PREFIX):]] = i
        i += 1


def _indices(fields: dict[str, int], names: tuple[str, ...]) -> list[int]:
    missing = [name for name in names if name not in fields]
    if missing:
        raise SpzError(f"Missing field: {missing[0]}")
    return [fields[name] for name in names]


def load_splat_from_ply(
    filename: PathLike, options: UnpackOptions | None = None
) -> GaussianCloud:
    """Load a Gaussian splat from a binary little-endian PLY file."""
    options = options or UnpackOptions()
    logger.info("Loading: %s", filename)
    with open(filename, "rb") as stream:
        if _read_line(stream) != "ply":
            raise SpzError(f"{filename}: not a .ply file")
        if _read_line(stream) != _FORMAT_LINE:
            raise SpzError(f"{filename}: unsupported .ply format")
        num_points = _parse_vertex_count(_read_line(stream), filename)
        logger.info("Loading %d points", num_points)
        fields = _read_fields(stream, filename)

        position_idx = _indices(fields, _POSITION_FIELDS)
        scale_idx = _indices(fields, _SCALE_FIELDS)
        rotation_idx = _indices(fields, _ROTATION_FIELDS)
        alpha_idx = _indices(fields, _ALPHA_FIELDS)
        color_idx = _indices(fields, _COLOR_FIELDS)

        # Spherical harmonics are optional; take the leading run of f_rest_* fields.
        sh_idx: list[int] = []
        for i in range(MAX_SH_COEFFICIENTS):
            index = fields.get(f"f_rest_{i}")
            if index is None:
                break
            sh_idx.append(index)
        sh_dim = len(sh_idx) // 3

        stride = len(fields)
        expected = num_points * stride * 4
        raw = stream.read(expected)
        if len(raw) < expected:
            raise SpzError(f"Unable to load data from: {filename}")

    values = np.frombuffer(raw, dtype="<f4").astype(np.float32).reshape(num_points, stride)

    # Reorder from [channel, coefficient] to [coefficient, channel].
    sh_order = np.array(sh_idx[: 3 * sh_dim], dtype=np.int64).reshape(3, sh_dim).T.reshape(-1)

    result = GaussianCloud(
        num_points=num_points,
        sh_degree=degree_for_dim(sh_dim),
        positions=values[:, position_idx],
        scales=values[:, scale_idx],
        rotations=values[:, rotation_idx],
        alphas=values[:, alpha_idx],
        colors=values[:, color_idx],
        sh=values[:, sh_order] if sh_dim else np.zeros(0, dtype=np.float32),
    )
    result.convert_coordinates(CoordinateSystem.RDF, options.to_system)
    return result


def _check_cloud_sizes(cloud: GaussianCloud) -> None:
    n = cloud.num_points
    expected = {
        "positions": n * 3,
        "scales": n * 3,
        "rotations": n * 4,
        "alphas": n,
        "colors": n * 3,
    }
    for name, size in expected.items():
        actual = getattr(cloud, name).size
        if actual != size:
            raise SpzError(f"{name} has {actual} values, expected {size}")


def _ply_header(num_points: int, sh_dim: int) -> bytes:
    lines = [
        "ply",
        _FORMAT_LINE,
        f"{_VERTEX_PREFIX}{num_points}",
        *(f"{_PROPERTY_PREFIX}{name}" for name in ("x", "y", "z", "nx", "ny", "nz")),
        *(f"{_PROPERTY_PREFIX}{name}" for name in _COLOR_FIELDS),
        *(f"{_PROPERTY_PREFIX}f_rest_{i}" for i in range(sh_dim * 3)),
        f"{_PROPERTY_PREFIX}opacity",
        *(f"{_PROPERTY_PREFIX}{name}" for name in _SCALE_FIELDS),
        *(f"{_PROPERTY_PREFIX}rot_{i}" for i in range(4)),
        "end_header",
    ]
    return ("\n".join(lines) + "\n").encode("ascii")


def save_splat_to_ply(
    cloud: GaussianCloud, options: PackOptions | None, filename: PathLike
) -> None:
    """Write a Gaussian splat to a binary little-endian PLY file."""
    options = options or PackOptions()
    _check_cloud_sizes(cloud)
    n = cloud.num_points
    sh_dim = cloud.sh.size // n // 3 if n > 0 else 0
    c = coordinate_converter(options.from_system, CoordinateSystem.RDF)
    if sh_dim > len(c.flip_sh):
        raise SpzError(f"Too many SH coefficients per point: {sh_dim}")

    flip_p = np.array(c.flip_p, dtype=np.float32)
    flip_q = np.array(c.flip_q, dtype=np.float32)
    flip_sh = np.array(c.flip_sh[:sh_dim], dtype=np.float32)

    positions = cloud.positions.reshape(n, 3) * flip_p
    rotations = cloud.rotations.reshape(n, 4)
    sh = cloud.sh[: n * sh_dim * 3].reshape(n, sh_dim, 3) * flip_sh[None, :, None]
    # Coefficients vary fastest, then the color channel.
    sh_columns = sh.transpose(0, 2, 1).reshape(n, sh_dim * 3)

    values = np.concatenate(
        [
            positions,
            np.zeros((n, 3), dtype=np.float32),  # normals, expected by some viewers
            cloud.colors.reshape(n, 3),
            sh_columns,
            cloud.alphas.reshape(n, 1),
            cloud.scales.reshape(n, 3),
            rotations[:, 3:4],
            rotations[:, :3] * flip_q,
        ],
        axis=1,
    ).astype("<f4")

    with open(filename, "wb") as out:
        out.write(_ply_header(n, sh_dim))
        out.write(values.tobytes())