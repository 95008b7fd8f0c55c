"""Still image writers (BMP, PNG, raw YUV/RGB, DNG, JPEG with EXIF) and acoustic focus feedback."""

__version__ = "1.10.0"