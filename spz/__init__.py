"""Compressed 3D Gaussian splat storage in the SPZ format, with PLY conversion."""

__version__ = "1.1.0"
__all__ = ["packed", "ply", "splat_types"]