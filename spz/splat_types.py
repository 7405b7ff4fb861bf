"""Core Gaussian splat data types, coordinate conversion and small math helpers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Sequence

import numpy as np

Vec3 = tuple[float, float, float]
Quat = tuple[float, float, float, float]

_SH_DIMS = {0: 0, 1: 3, 2: 8, 3: 15}


class SpzError(ValueError):
    """Raised when splat data is malformed or cannot be processed."""


class CoordinateSystem(IntEnum):
    """Axis conventions a splat may be expressed in."""

    UNSPECIFIED = 0
    LDB = 1  # Left Down Back
    RDB = 2  # Right Down Back
    LUB = 3  # Left Up Back
    RUB = 4  # Right Up Back, Three.js coordinate system
    LDF = 5  # Left Down Front
    RDF = 6  # Right Down Front, PLY coordinate system
    LUF = 7  # Left Up Front, GLB coordinate system
    RUF = 8  # Right Up Front, Unity coordinate system


@dataclass(frozen=True)
class CoordinateConverter:
    """Sign flips that map positions, rotations and SH coefficients between systems."""

    flip_p: tuple[float, ...] = (1.0, 1.0, 1.0)
    flip_q: tuple[float, ...] = (1.0, 1.0, 1.0)
    flip_sh: tuple[float, ...] = (1.0,) * 15


def axes_match(a: CoordinateSystem, b: CoordinateSystem) -> tuple[bool, bool, bool]:
    """Return, per axis, whether the two coordinate systems point the same way."""
    a_num = int(a) - 1
    b_num = int(b) - 1
    if a_num < 0 or b_num < 0:
        return (True, True, True)
    x, y, z = (((a_num >> bit) & 1) == ((b_num >> bit) & 1) for bit in range(3))
    return (x, y, z)


def coordinate_converter(
    from_system: CoordinateSystem, to_system: CoordinateSystem
) -> CoordinateConverter:
    """Build the flips needed to convert data from one coordinate system to another."""
    x_match, y_match, z_match = axes_match(from_system, to_system)
    x = 1.0 if x_match else -1.0
    y = 1.0 if y_match else -1.0
    z = 1.0 if z_match else -1.0
    return CoordinateConverter(
        flip_p=(x, y, z),
        flip_q=(y * z, x * z, x * y),
        flip_sh=(
            y,
            z,
            x,
            x * y,
            y * z,
            1.0,
            x * z,
            1.0,
            y,
            x * y * z,
            y,
            z,
            x,
            z,
            x,
        ),
    )


def degree_for_dim(dim: int) -> int:
    """Spherical harmonics degree for a number of coefficients per channel."""
    if dim < 3:
        return 0
    if dim < 8:
        return 1
    if dim < 15:
        return 2
    return 3


def dim_for_degree(degree: int) -> int:
    """Number of coefficients per channel for a spherical harmonics degree."""
    try:
        return _SH_DIMS[degree]
    except KeyError:
        raise SpzError(f"Unsupported SH degree: {degree}") from None


def _as_float_array(values) -> np.ndarray:
    return np.array(values, dtype=np.float32).reshape(-1)


def _empty() -> np.ndarray:
    return np.zeros(0, dtype=np.float32)


@dataclass
class GaussianCloud:
    """A point cloud of Gaussians stored as flat float32 arrays.

    Positions and scales hold three values per point (scales on a log scale),
    rotations four (x, y, z, w), alphas one (before sigmoid), colors three
    (SH DC component) and ``sh`` holds the higher spherical harmonics with the
    color channel as the fastest-varying axis.
    """

    num_points: int = 0
    sh_degree: int = 0
    antialiased: bool = False
    positions: np.ndarray = field(default_factory=_empty)
    scales: np.ndarray = field(default_factory=_empty)
    rotations: np.ndarray = field(default_factory=_empty)
    alphas: np.ndarray = field(default_factory=_empty)
    colors: np.ndarray = field(default_factory=_empty)
    sh: np.ndarray = field(default_factory=_empty)

    def __post_init__(self) -> None:
        self.positions = _as_float_array(self.positions)
        self.scales = _as_float_array(self.scales)
        self.rotations = _as_float_array(self.rotations)
        self.alphas = _as_float_array(self.alphas)
        self.colors = _as_float_array(self.colors)
        self.sh = _as_float_array(self.sh)

    def check_sizes(self) -> None:
        """Raise SpzError unless every array matches the point count and SH degree."""
        n = self.num_points
        if n < 0:
            raise SpzError(f"Negative point count: {n}")
        if not 0 <= self.sh_degree <= 3:
            raise SpzError(f"Unsupported SH degree: {self.sh_degree}")
        expected = {
            "positions": n * 3,
            "scales": n * 3,
            "rotations": n * 4,
            "alphas": n,
            "colors": n * 3,
            "sh": n * dim_for_degree(self.sh_degree) * 3,
        }
        for name, size in expected.items():
            actual = getattr(self, name).size
            if actual != size:
                raise SpzError(f"{name} has {actual} values, expected {size}")

    def convert_coordinates(
        self, from_system: CoordinateSystem, to_system: CoordinateSystem
    ) -> None:
        """Convert the cloud between coordinate systems in place."""
        c = coordinate_converter(from_system, to_system)
        if self.positions.size:
            self.positions.reshape(-1, 3)[:] *= np.array(c.flip_p, dtype=np.float32)
        if self.rotations.size:
            # The w component is never flipped.
            self.rotations.reshape(-1, 4)[:, :3] *= np.array(c.flip_q, dtype=np.float32)
        num_coeffs = self.sh.size // 3
        if num_coeffs == 0 or self.num_points <= 0:
            return
        per_point = num_coeffs // self.num_points
        if per_point == 0:
            return
        if per_point > len(c.flip_sh):
            raise SpzError(f"Too many SH coefficients per point: {per_point}")
        flips = np.resize(np.array(c.flip_sh[:per_point], dtype=np.float32), num_coeffs)
        self.sh.reshape(-1, 3)[:num_coeffs] *= flips[:, None]

    def rotate_180_deg_about_x(self) -> None:
        """Rotate in place by 180 degrees about x (RUB <-> RDF)."""
        self.convert_coordinates(CoordinateSystem.RUB, CoordinateSystem.RDF)

    def median_volume(self) -> float:
        """Median ellipsoid volume of the Gaussians, 0.01 for an empty cloud."""
        if self.num_points == 0:
            return 0.01
        s = self.scales.reshape(-1, 3)
        sums = np.sort(s[:, 0] + s[:, 1] + s[:, 2])
        median = float(sums[sums.size // 2])
        return float(np.float32((math.pi * 4.0 / 3.0) * math.exp(median)))


def half_to_float(h: int) -> float:
    """Decode an IEEE half-precision bit pattern."""
    sign = (h >> 15) & 0x1
    exponent = (h >> 10) & 0x1F
    mantissa = h & 0x3FF
    sign_mul = -1.0 if sign == 1 else 1.0
    if exponent == 0:
        return sign_mul * 2.0**-14 * mantissa / 1024.0
    if exponent == 31:
        return math.inf if mantissa != 0 else sign_mul * math.nan
    return sign_mul * 2.0 ** (exponent - 15) * (1.0 + mantissa / 1024.0)


def float_to_half(f: float) -> int:
    """Encode a float as a half-precision bit pattern, truncating the mantissa."""
    with np.errstate(over="ignore"):
        f32 = int(np.array(f, dtype=np.float32).view(np.uint32))
    sign = (f32 >> 31) & 0x01
    exponent = (f32 >> 23) & 0xFF
    mantissa = f32 & 0x7FFFFF

    if exponent == 0xFF:
        return (sign << 15) | (0x7C00 if mantissa == 0 else 0x7C01)

    centered_exp = exponent - 127
    if centered_exp > 15:
        return (sign << 15) | 0x7C00
    if centered_exp > -15:
        return (sign << 15) | ((centered_exp + 15) << 10) | (mantissa >> 13)

    full_mantissa = 0x800000 | mantissa
    shift = -(centered_exp + 14)
    return (sign << 15) | ((full_mantissa >> shift) >> 13)


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of two 3-vectors."""
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def squared_norm(v: Sequence[float]) -> float:
    """Squared length of a 3-vector."""
    return dot(v, v)


def norm(v: Sequence[float]) -> float:
    """Euclidean length of a vector or quaternion."""
    return math.sqrt(sum(x * x for x in v))


def normalized(v: Sequence[float]) -> tuple[float, ...]:
    """Scale a vector or quaternion to unit length."""
    n = norm(v)
    return tuple(x / n for x in v)


def axis_angle_quat(scaled_axis: Sequence[float]) -> Quat:
    """Quaternion (w, x, y, z) for a rotation given as axis scaled by angle."""
    a0, a1, a2 = scaled_axis
    theta_squared = a0 * a0 + a1 * a1 + a2 * a2
    if theta_squared > 0.0:
        theta = math.sqrt(theta_squared)
        half_theta = theta * 0.5
        k = math.sin(half_theta) / theta
        return normalized((math.cos(half_theta), a0 * k, a1 * k, a2 * k))  # type: ignore[return-value]
    # First-order Taylor approximation avoids dividing by zero.
    k = 0.5
    return normalized((1.0, a0 * k, a1 * k, a2 * k))  # type: ignore[return-value]


def rotate_vector(q: Sequence[float], p: Sequence[float]) -> Vec3:
    """Rotate a 3-vector by a unit quaternion (w, x, y, z)."""
    w, x, y, z = q
    vx, vy, vz = p
    x2, y2, z2 = x + x, y + y, z + z
    wx2, wy2, wz2 = w * x2, w * y2, w * z2
    xx2, xy2, xz2 = x * x2, x * y2, x * z2
    yy2, yz2, zz2 = y * y2, y * z2, z * z2
    return (
        vx * (1.0 - (yy2 + zz2)) + vy * (xy2 - wz2) + vz * (xz2 + wy2),
        vx * (xy2 + wz2) + vy * (1.0 - (xx2 + zz2)) + vz * (yz2 - wx2),
        vx * (xz2 - wy2) + vy * (yz2 + wx2) + vz * (1.0 - (xx2 + yy2)),
    )


def quat_multiply(a: Sequence[float], b: Sequence[float]) -> Quat:
    """Hamilton product of two quaternions (w, x, y, z), normalized."""
    w, x, y, z = a
    qw, qx, qy, qz = b
    return normalized(  # type: ignore[return-value]
        (
            w * qw - x * qx - y * qy - z * qz,
            w * qx + x * qw + y * qz - z * qy,
            w * qy - x * qz + y * qw + z * qx,
            w * qz + x * qy - y * qx + z * qw,
        )
    )