"""Pixel formats, stream descriptions and still-capture options shared by the image writers."""

from __future__ import annotations

import contextlib
import enum
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator


class PixelFormat(enum.Enum):
    """Pixel formats a stream may carry.

    Names follow the DRM fourcc convention, so RGB888 is stored in memory as
    B, G, R bytes and BGR888 as R, G, B bytes.
    """

    RGB888 = "RGB888"
    BGR888 = "BGR888"
    RGB161616 = "RGB161616"
    BGR161616 = "BGR161616"
    YUV420 = "YUV420"
    YUYV = "YUYV"

    SRGGB10_CSI2P = "SRGGB10_CSI2P"
    SGRBG10_CSI2P = "SGRBG10_CSI2P"
    SBGGR10_CSI2P = "SBGGR10_CSI2P"
    SGBRG10_CSI2P = "SGBRG10_CSI2P"
    SRGGB10 = "SRGGB10"
    SGRBG10 = "SGRBG10"
    SBGGR10 = "SBGGR10"
    SGBRG10 = "SGBRG10"

    SRGGB12_CSI2P = "SRGGB12_CSI2P"
    SGRBG12_CSI2P = "SGRBG12_CSI2P"
    SBGGR12_CSI2P = "SBGGR12_CSI2P"
    SGBRG12_CSI2P = "SGBRG12_CSI2P"
    SRGGB12 = "SRGGB12"
    SGRBG12 = "SGRBG12"
    SBGGR12 = "SBGGR12"
    SGBRG12 = "SGBRG12"

    SRGGB16 = "SRGGB16"
    SGRBG16 = "SGRBG16"
    SBGGR16 = "SBGGR16"
    SGBRG16 = "SGBRG16"

    R10_CSI2P = "R10_CSI2P"
    R10 = "R10"
    R12 = "R12"

    RGGB_PISP_COMP1 = "RGGB_PISP_COMP1"
    GRBG_PISP_COMP1 = "GRBG_PISP_COMP1"
    GBRG_PISP_COMP1 = "GBRG_PISP_COMP1"
    BGGR_PISP_COMP1 = "BGGR_PISP_COMP1"


@dataclass(frozen=True)
class StreamInfo:
    """Geometry and format of one image stream."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: PixelFormat | None = None
    colour_space: str | None = None


@dataclass
class StillOptions:
    """Options that control how still images are encoded and written."""

    encoding: str = "jpg"
    quality: int = 93
    restart: int = 0
    thumb_width: int = 320
    thumb_height: int = 240
    thumb_quality: int = 70
    exif: list[str] = field(default_factory=list)
    output: str = ""


@contextlib.contextmanager
def open_output(filename: str) -> Iterator[BinaryIO]:
    """Open ``filename`` for binary writing; ``"-"`` means standard output."""
    if filename == "-":
        out = sys.stdout.buffer
        try:
            yield out
        finally:
            out.flush()
        return
    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise OSError(f"failed to open file {filename}") from exc
    with fp:
        yield fp