"""Packed (quantized) Gaussian splats and the gzip-compressed SPZ container."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import numpy as np

from spz.splat_types import (
    CoordinateConverter,
    CoordinateSystem,
    GaussianCloud,
    SpzError,
    coordinate_converter,
    dim_for_degree,
    half_to_float,
)

PathLike = Union[str, Path]

MAGIC = 0x5053474E  # "NGSP" when stored little-endian
VERSION = 2
FLAG_ANTIALIASED = 0x1
MAX_POINTS_TO_READ = 10_000_000
FRACTIONAL_BITS = 12

# DC colors are scaled by less than the SH constant so that out-of-range base
# colors, brought back into range by higher bands, remain representable.
COLOR_SCALE = np.float32(0.15)

_HEADER = struct.Struct("<IIIBBBB")
_SH1_BUCKET = 1 << (8 - 5)
_SH_REST_BUCKET = 1 << (8 - 4)
_F32 = np.float32


@dataclass(frozen=True)
class PackOptions:
    """Options for packing: the coordinate system the input cloud is in."""

    from_system: CoordinateSystem = CoordinateSystem.UNSPECIFIED


@dataclass(frozen=True)
class UnpackOptions:
    """Options for unpacking: the coordinate system to produce."""

    to_system: CoordinateSystem = CoordinateSystem.UNSPECIFIED


@dataclass
class UnpackedGaussian:
    """A single Gaussian inflated back to floats."""

    position: tuple[float, ...]
    rotation: tuple[float, ...]  # x, y, z, w
    scale: tuple[float, ...]  # log scale
    color: tuple[float, ...]  # SH DC component
    alpha: float  # before sigmoid
    sh_r: tuple[float, ...]
    sh_g: tuple[float, ...]
    sh_b: tuple[float, ...]


@dataclass
class PackedGaussian:
    """A single low-precision Gaussian, always padded to full SH degree."""

    position: bytes = bytes(9)
    rotation: bytes = bytes(3)
    scale: bytes = bytes(3)
    color: bytes = bytes(3)
    alpha: int = 0
    sh_r: bytes = bytes(15)
    sh_g: bytes = bytes(15)
    sh_b: bytes = bytes(15)

    def unpack(
        self, uses_float16: bool, fractional_bits: int, converter: CoordinateConverter
    ) -> UnpackedGaussian:
        """Inflate this Gaussian, applying the converter's flips."""
        raw_position = self.position[:6] if uses_float16 else self.position
        position = _decode_positions(raw_position, uses_float16, fractional_bits)
        position = position * np.array(converter.flip_p, dtype=_F32)

        rotation = _decode_rotations(self.rotation)[0]
        rotation[:3] *= np.array(converter.flip_q, dtype=_F32)

        flip_sh = np.array(converter.flip_sh, dtype=_F32)

        def sh(channel: bytes) -> tuple[float, ...]:
            return _floats(flip_sh * _unquantize_sh(channel))

        return UnpackedGaussian(
            position=_floats(position),
            rotation=_floats(rotation),
            scale=_floats(_decode_scales(self.scale)),
            color=_floats(_decode_colors(self.color)),
            alpha=float(_decode_alphas(bytes([self.alpha]))[0]),
            sh_r=sh(self.sh_r),
            sh_g=sh(self.sh_g),
            sh_b=sh(self.sh_b),
        )


@dataclass
class PackedGaussians:
    """A whole splat in low precision, stored attribute by attribute."""

    num_points: int = 0
    sh_degree: int = 0
    fractional_bits: int = 0
    antialiased: bool = False
    positions: bytes = field(default=b"")
    scales: bytes = field(default=b"")
    rotations: bytes = field(default=b"")
    alphas: bytes = field(default=b"")
    colors: bytes = field(default=b"")
    sh: bytes = field(default=b"")

    def uses_float16(self) -> bool:
        """Whether positions use the legacy float16 encoding."""
        return len(self.positions) == self.num_points * 3 * 2

    def at(self, i: int) -> PackedGaussian:
        """The i-th Gaussian, with spherical harmonics padded by neutral values."""
        if not 0 <= i < self.num_points:
            raise IndexError(f"Gaussian index out of range: {i}")
        position_bytes = 6 if self.uses_float16() else 9
        s3 = slice(i * 3, i * 3 + 3)
        dim = dim_for_degree(self.sh_degree)
        chunk = self.sh[i * dim * 3 : (i + 1) * dim * 3]
        padding = bytes([128]) * (15 - dim)
        return PackedGaussian(
            position=self.positions[i * position_bytes : (i + 1) * position_bytes].ljust(9, b"\0"),
            rotation=self.rotations[s3],
            scale=self.scales[s3],
            color=self.colors[s3],
            alpha=self.alphas[i],
            sh_r=chunk[0::3] + padding,
            sh_g=chunk[1::3] + padding,
            sh_b=chunk[2::3] + padding,
        )

    def unpack(self, i: int, converter: CoordinateConverter) -> UnpackedGaussian:
        """Inflate the i-th Gaussian with the given converter."""
        return self.at(i).unpack(self.uses_float16(), self.fractional_bits, converter)


def _floats(values: np.ndarray) -> tuple[float, ...]:
    return tuple(float(v) for v in values)


def _round(x) -> np.ndarray:
    """Round half away from zero."""
    x = np.asarray(x, dtype=np.float64)
    return np.copysign(np.floor(np.abs(x) + 0.5), x)


def _to_uint8(x) -> np.ndarray:
    return np.clip(_round(x), 0, 255).astype(np.uint8)


def _quantize_sh(values: np.ndarray, buckets: np.ndarray) -> np.ndarray:
    """Quantize to 8 bits, snapping to bucket centers so that 0 stays exact."""
    q = (_round(values * _F32(128.0)) + 128.0).astype(np.int64)
    t = q + buckets // 2
    div = np.where(t >= 0, t // buckets, -((-t) // buckets))
    return np.clip(div * buckets, 0, 255).astype(np.uint8)


def _unquantize_sh(raw: bytes) -> np.ndarray:
    x = np.frombuffer(raw, dtype=np.uint8).astype(_F32)
    return (x - _F32(128.0)) / _F32(128.0)


def _decode_positions(raw: bytes, uses_float16: bool, fractional_bits: int) -> np.ndarray:
    if uses_float16:
        halves = np.frombuffer(raw, dtype="<u2")
        return np.array([half_to_float(int(h)) for h in halves], dtype=_F32)
    b = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
    fixed = b[:, 0] | (b[:, 1] << 8) | (b[:, 2] << 16)
    fixed = np.where(fixed & 0x800000, fixed - 0x1000000, fixed)
    scale = _F32(1.0) / _F32(1 << fractional_bits)
    return fixed.astype(_F32) * scale


def _decode_scales(raw: bytes) -> np.ndarray:
    x = np.frombuffer(raw, dtype=np.uint8).astype(_F32)
    return x / _F32(16.0) - _F32(10.0)


def _decode_rotations(raw: bytes) -> np.ndarray:
    r = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(_F32)
    xyz = r * (_F32(1.0) / _F32(127.5)) + _F32(-1.0)
    # The quaternion is normalized with non-negative w, so w follows from xyz.
    w = np.sqrt(np.maximum(_F32(0.0), _F32(1.0) - np.sum(xyz * xyz, axis=1)))
    return np.concatenate([xyz, w[:, None]], axis=1).astype(_F32)


def _decode_alphas(raw: bytes) -> np.ndarray:
    x = np.frombuffer(raw, dtype=np.uint8).astype(_F32) / _F32(255.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.log(x / (_F32(1.0) - x))


def _decode_colors(raw: bytes) -> np.ndarray:
    x = np.frombuffer(raw, dtype=np.uint8).astype(_F32)
    return (x / _F32(255.0) - _F32(0.5)) / COLOR_SCALE


def _check_packed_sizes(packed: PackedGaussians, uses_float16: bool) -> None:
    n = packed.num_points
    dim = dim_for_degree(packed.sh_degree)
    expected = {
        "positions": n * 3 * (2 if uses_float16 else 3),
        "scales": n * 3,
        "rotations": n * 3,
        "alphas": n,
        "colors": n * 3,
        "sh": n * dim * 3,
    }
    for name, size in expected.items():
        actual = len(getattr(packed, name))
        if actual != size:
            raise SpzError(f"packed {name} has {actual} bytes, expected {size}")


def compress_gzipped(data: bytes) -> bytes:
    """Compress bytes into a gzip stream."""
    compressor = zlib.compressobj(
        zlib.Z_DEFAULT_COMPRESSION,
        zlib.DEFLATED,
        16 + zlib.MAX_WBITS,
        9,
        zlib.Z_DEFAULT_STRATEGY,
    )
    return compressor.compress(bytes(data)) + compressor.flush()


def decompress_gzipped(data: bytes) -> bytes:
    """Decompress a complete gzip stream, raising SpzError if it is invalid."""
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        out = decompressor.decompress(bytes(data))
    except zlib.error as exc:
        raise SpzError(f"Invalid gzip data: {exc}") from exc
    if not decompressor.eof:
        raise SpzError("Truncated gzip data")
    return out


def pack_gaussians(cloud: GaussianCloud, options: PackOptions | None = None) -> PackedGaussians:
    """Quantize a Gaussian cloud into the packed representation (RUB coordinates)."""
    options = options or PackOptions()
    cloud.check_sizes()
    n = cloud.num_points
    dim = dim_for_degree(cloud.sh_degree)
    c = coordinate_converter(options.from_system, CoordinateSystem.RUB)

    # 24-bit fixed point with 12 fractional bits (~0.25 mm resolution).
    scale = _F32(1 << FRACTIONAL_BITS)
    flipped = cloud.positions.reshape(-1, 3) * np.array(c.flip_p, dtype=_F32) * scale
    fixed = _round(flipped).astype(np.int64).reshape(-1)
    positions = np.stack([fixed & 0xFF, (fixed >> 8) & 0xFF, (fixed >> 16) & 0xFF], axis=1)

    scales = _to_uint8((cloud.scales + _F32(10.0)) * _F32(16.0))

    # Normalize, make w non-negative, then keep xyz only.
    r = cloud.rotations.reshape(-1, 4)
    q = r / np.sqrt(np.sum(r * r, axis=1))[:, None]
    q[:, :3] *= np.array(c.flip_q, dtype=_F32)
    sign = np.where(q[:, 3] < 0, _F32(-127.5), _F32(127.5)).astype(_F32)
    q = q * sign[:, None] + _F32(127.5)
    rotations = _to_uint8(q[:, :3])

    with np.errstate(over="ignore"):
        sigmoid = _F32(1.0) / (_F32(1.0) + np.exp(-cloud.alphas))
    alphas = _to_uint8(sigmoid * _F32(255.0))

    colors = _to_uint8(cloud.colors * (COLOR_SCALE * _F32(255.0)) + _F32(0.5) * _F32(255.0))

    if cloud.sh_degree > 0:
        flips = np.array(c.flip_sh[:dim], dtype=_F32)
        buckets = np.array([_SH1_BUCKET] * 3 + [_SH_REST_BUCKET] * (dim - 3), dtype=np.int64)
        values = cloud.sh.reshape(n, dim, 3) * flips[None, :, None]
        sh = _quantize_sh(values, buckets[None, :, None]).tobytes()
    else:
        sh = b""

    return PackedGaussians(
        num_points=n,
        sh_degree=cloud.sh_degree,
        fractional_bits=FRACTIONAL_BITS,
        antialiased=cloud.antialiased,
        positions=positions.astype(np.uint8).tobytes(),
        scales=scales.tobytes(),
        rotations=rotations.tobytes(),
        alphas=alphas.tobytes(),
        colors=colors.tobytes(),
        sh=sh,
    )


def unpack_gaussians(
    packed: PackedGaussians, options: UnpackOptions | None = None
) -> GaussianCloud:
    """Inflate packed Gaussians into a cloud in the requested coordinate system."""
    options = options or UnpackOptions()
    uses_float16 = packed.uses_float16()
    _check_packed_sizes(packed, uses_float16)

    result = GaussianCloud(
        num_points=packed.num_points,
        sh_degree=packed.sh_degree,
        antialiased=packed.antialiased,
        positions=_decode_positions(packed.positions, uses_float16, packed.fractional_bits),
        scales=_decode_scales(packed.scales),
        rotations=_decode_rotations(packed.rotations),
        alphas=_decode_alphas(packed.alphas),
        colors=_decode_colors(packed.colors),
        sh=_unquantize_sh(packed.sh),
    )
    result.convert_coordinates(CoordinateSystem.RUB, options.to_system)
    return result


def serialize_packed_gaussians(packed: PackedGaussians) -> bytes:
    """Header followed by the attribute blocks, uncompressed."""
    header = _HEADER.pack(
        MAGIC,
        VERSION,
        packed.num_points,
        packed.sh_degree,
        packed.fractional_bits,
        FLAG_ANTIALIASED if packed.antialiased else 0,
        0,
    )
    return b"".join(
        [
            header,
            packed.positions,
            packed.alphas,
            packed.colors,
            packed.scales,
            packed.rotations,
            packed.sh,
        ]
    )


def deserialize_packed_gaussians(data: bytes) -> PackedGaussians:
    """Parse uncompressed packed Gaussians, raising SpzError on malformed input."""
    if len(data) < _HEADER.size:
        raise SpzError("Header not found")
    magic, version, n, sh_degree, fractional_bits, flags, _ = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise SpzError("Header not found")
    if not 1 <= version <= 2:
        raise SpzError(f"Version not supported: {version}")
    if n > MAX_POINTS_TO_READ:
        raise SpzError(f"Too many points: {n}")
    if sh_degree > 3:
        raise SpzError(f"Unsupported SH degree: {sh_degree}")

    dim = dim_for_degree(sh_degree)
    uses_float16 = version == 1
    sizes = [
        ("positions", n * 3 * (2 if uses_float16 else 3)),
        ("alphas", n),
        ("colors", n * 3),
        ("scales", n * 3),
        ("rotations", n * 3),
        ("sh", n * dim * 3),
    ]
    blocks: dict[str, bytes] = {}
    offset = _HEADER.size
    for name, size in sizes:
        end = offset + size
        if end > len(data):
            raise SpzError("Read error: data is truncated")
        blocks[name] = bytes(data[offset:end])
        offset = end

    return PackedGaussians(
        num_points=n,
        sh_degree=sh_degree,
        fractional_bits=fractional_bits,
        antialiased=(flags & FLAG_ANTIALIASED) != 0,
        **blocks,
    )


def save_spz(cloud: GaussianCloud, options: PackOptions | None = None) -> bytes:
    """Pack, serialize and gzip a cloud."""
    return compress_gzipped(serialize_packed_gaussians(pack_gaussians(cloud, options)))


def load_spz_packed(data: bytes) -> PackedGaussians:
    """Decompress and parse SPZ bytes without inflating them."""
    return deserialize_packed_gaussians(decompress_gzipped(data))


def load_spz(data: bytes, options: UnpackOptions | None = None) -> GaussianCloud:
    """Load a cloud from SPZ bytes."""
    return unpack_gaussians(load_spz_packed(data), options)


def save_spz_file(
    cloud: GaussianCloud, options: PackOptions | None, filename: PathLike
) -> None:
    """Write a cloud to an SPZ file."""
    Path(filename).write_bytes(save_spz(cloud, options))


def load_spz_file(filename: PathLike, options: UnpackOptions | None = None) -> GaussianCloud:
    """Read a cloud from an SPZ file."""
    return load_spz(Path(filename).read_bytes(), options)


def load_spz_packed_file(filename: PathLike) -> PackedGaussians:
    """Read packed Gaussians from an SPZ file."""
    return load_spz_packed(Path(filename).read_bytes())