# spz

Read and write 3D Gaussian splats in the compact SPZ format, and convert them
to and from binary little-endian PLY files.

An SPZ file is a gzip-compressed stream. It holds, for each Gaussian, a
24-bit fixed-point position with 12 fractional bits, quantized log scales, a
quantized rotation quaternion, opacity, base color and up to degree 3 of
spherical harmonics. Files of version 1, whose positions are float16, can be
read as well; files are always written as version 2.

## Installation

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## Modules

- `spz.splat_types`: `GaussianCloud`, `CoordinateSystem`, `CoordinateConverter`,
  `SpzError`, coordinate conversion (`coordinate_converter`, `axes_match`),
  half-float helpers (`half_to_float`, `float_to_half`) and small vector and
  quaternion helpers (`dot`, `norm`, `normalized`, `axis_angle_quat`,
  `rotate_vector`, `quat_multiply`).
- `spz.packed`: the quantized `PackedGaussians` form, `PackOptions`,
  `UnpackOptions`, and reading and writing SPZ data in memory or on disk.
- `spz.ply`: `load_splat_from_ply` and `save_splat_to_ply`.

## Usage

A `GaussianCloud` holds flat float32 NumPy arrays: `positions` (3 per point),
`scales` (3, log scale), `rotations` (4, as x, y, z, w), `alphas` (1, before
sigmoid), `colors` (3, spherical-harmonics DC component) and `sh` (the higher
coefficients, color channel varying fastest). `check_sizes()` raises
`SpzError` if the arrays do not match `num_points` and `sh_degree`.

Convert a PLY file to SPZ:

```python
from spz.packed import PackOptions, UnpackOptions, save_spz_file
from spz.ply import load_splat_from_ply
from spz.splat_types import CoordinateSystem

cloud = load_splat_from_ply("scene.ply", UnpackOptions(to_system=CoordinateSystem.RUB))
save_spz_file(cloud, PackOptions(from_system=CoordinateSystem.RUB), "scene.spz")
```

Read an SPZ file back and write it as PLY:

```python
from spz.packed import PackOptions, UnpackOptions, load_spz_file
from spz.ply import save_splat_to_ply
from spz.splat_types import CoordinateSystem

cloud = load_spz_file("scene.spz", UnpackOptions(to_system=CoordinateSystem.RDF))
print(cloud.num_points, cloud.sh_degree, cloud.median_volume())
save_splat_to_ply(cloud, PackOptions(from_system=CoordinateSystem.RDF), "roundtrip.ply")
```

In memory, `save_spz(cloud, options)` returns the compressed bytes and
`load_spz(data, options)` reads them. `load_spz_packed(data)` and
`load_spz_packed_file(filename)` return the quantized `PackedGaussians`
without inflating them; `PackedGaussians.at(i)` gives one `PackedGaussian`
(spherical harmonics padded to 15 coefficients with the neutral value 128) and
`PackedGaussians.unpack(i, converter)` inflates it to an `UnpackedGaussian`.
The steps are also available one by one: `pack_gaussians`,
`serialize_packed_gaussians`, `compress_gzipped`, `decompress_gzipped`,
`deserialize_packed_gaussians` and `unpack_gaussians`.

The options are optional: passing `None` means `CoordinateSystem.UNSPECIFIED`.

## PLY files

`load_splat_from_ply` accepts only `format binary_little_endian 1.0` with a
single `element vertex` of `property float` fields, and between 1 and
10,485,760 points. It needs `x y z`, `scale_0..2`, `rot_0..3`, `opacity` and
`f_dc_0..2`; spherical harmonics are taken from the leading run of
`f_rest_*` fields. It logs progress through the `spz.ply` logger.
`save_splat_to_ply` writes positions, zero normals, DC color, `f_rest_*`,
opacity, scales and rotation in that order.

## Coordinate systems

SPZ stores data in the RUB system (right, up, back, as used by Three.js);
PLY files are RDF (right, down, front). `CoordinateSystem.UNSPECIFIED` leaves
data untouched. Conversions flip positions, quaternion x/y/z components and
the affected spherical-harmonics coefficients;
`GaussianCloud.convert_coordinates` does this in place and
`rotate_180_deg_about_x` converts between RUB and RDF.

## Errors

Malformed or truncated input, bad gzip data, unsupported versions or
spherical-harmonics degrees, more than 10,000,000 points in an SPZ file and
inconsistent array sizes raise `spz.splat_types.SpzError`, a subclass of
`ValueError`. Files that cannot be opened raise the usual `OSError`, and
`PackedGaussians.at` raises `IndexError` for an index out of range.

## What it does not do

This is a library only: it installs no command-line converter, so converting
between PLY and SPZ is done from Python as shown above. It has no renderer or
viewer, and it reads and writes no formats other than SPZ and binary
little-endian PLY.