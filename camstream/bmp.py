"""Write 24-bit RGB images as BMP files."""

from __future__ import annotations

import logging
import struct
from typing import Sequence

from camstream.formats import PixelFormat, StillOptions, StreamInfo, open_output

_log = logging.getLogger(__name__)

_FILE_HEADER = struct.Struct("<2sIHHI")
_IMAGE_HEADER = struct.Struct("<IIiHHIIIIII")
_PIXELS_PER_METRE = 100000


def _plane(mem: Sequence[bytes], info: StreamInfo, line: int) -> memoryview:
    view = memoryview(mem[0])
    if info.height and len(view) < (info.height - 1) * info.stride + line:
        raise ValueError("image buffer too small for stream")
    return view


def encode_bmp(mem: Sequence[bytes], info: StreamInfo) -> bytes:
    """Return the BMP file contents for an RGB888 image."""
    if info.pixel_format is not PixelFormat.RGB888:
        raise ValueError("pixel format for bmp should be RGB")

    line = info.width * 3
    pitch = (line + 3) & ~3  # rows are multiples of 4 bytes
    padding = bytes(pitch - line)
    data = _plane(mem, info, line)

    offset = _FILE_HEADER.size + _IMAGE_HEADER.size
    filesize = offset + info.height * pitch
    header = _FILE_HEADER.pack(b"BM", filesize, 0, 0, offset)
    # A negative height makes the image come out the right way up.
    image_header = _IMAGE_HEADER.pack(
        _IMAGE_HEADER.size,
        info.width,
        -info.height,
        1,
        24,
        0,
        0,
        _PIXELS_PER_METRE,
        _PIXELS_PER_METRE,
        0,
        0,
    )
    rows = (
        bytes(data[y * info.stride : y * info.stride + line]) + padding
        for y in range(info.height)
    )
    return header + image_header + b"".join(rows)


def bmp_save(
    mem: Sequence[bytes],
    info: StreamInfo,
    filename: str,
    options: StillOptions | None = None,
) -> None:
    """Encode an RGB888 image as BMP and write it to ``filename``."""
    contents = encode_bmp(mem, info)
    with open_output(filename) as fp:
        fp.write(contents)
    _log.debug("Wrote %d bytes to BMP file", len(contents))