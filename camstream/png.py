"""Write 24-bit RGB images as PNG files."""

from __future__ import annotations

import io
import logging
from typing import Sequence

from PIL import Image

from camstream.formats import PixelFormat, StillOptions, StreamInfo, open_output

_log = logging.getLogger(__name__)


def encode_png(mem: Sequence[bytes], info: StreamInfo) -> bytes:
    """Return the PNG file contents for a BGR888 (R, G, B in memory) image."""
    if info.pixel_format is not PixelFormat.BGR888:
        raise ValueError("pixel format for png should be BGR")

    line = info.width * 3
    data = memoryview(mem[0])
    if info.height and len(data) < (info.height - 1) * info.stride + line:
        raise ValueError("image buffer too small for stream")

    pixels = b"".join(
        data[y * info.stride : y * info.stride + line] for y in range(info.height)
    )
    image = Image.frombytes("RGB", (info.width, info.height), pixels)
    out = io.BytesIO()
    # Low compression gets most of the size reduction while staying fast.
    image.save(out, format="PNG", compress_level=1)
    return out.getvalue()


def png_save(
    mem: Sequence[bytes],
    info: StreamInfo,
    filename: str,
    options: StillOptions | None = None,
) -> None:
    """Encode a BGR888 image as PNG and write it to ``filename``."""
    contents = encode_png(mem, info)
    with open_output(filename) as fp:
        fp.write(contents)
    _log.debug("Wrote PNG file of %d bytes", len(contents))