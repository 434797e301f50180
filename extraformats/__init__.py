"""Image handlers for WBMP and WebP, and a TIFF encoder, over a shared image model."""

__version__ = "0.1.0"
__all__ = ["imageio", "wbmp", "tiffwrite", "webp"]