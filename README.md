# camstream

Writers that turn captured camera frames into image files, and a small stage
that turns autofocus quality into an audible tone.

## Describing a frame

Every writer takes:

- `mem`: a sequence of frame planes (bytes-like objects); the writers read the
  first one,
- `info`: a `camstream.formats.StreamInfo` with `width`, `height`, `stride`
  (bytes per row) and `pixel_format` (a `camstream.formats.PixelFormat`),
- `filename`: where to write; `"-"` means standard output (except for DNG),
- `options`: a `camstream.formats.StillOptions` (`encoding`, `quality`,
  `restart`, `thumb_width`, `thumb_height`, `thumb_quality`, `exif`, `output`).

Pixel format names follow the DRM fourcc convention: `RGB888` is stored as
B, G, R bytes and `BGR888` as R, G, B bytes. Errors in the input (wrong pixel
format, odd sizes, a buffer too small for the stream) raise `ValueError`;
a file that cannot be opened raises `OSError`.

## Still image writers

- `camstream.bmp.encode_bmp(mem, info)` returns a 24-bit top-down BMP for an
  `RGB888` frame; `bmp_save(mem, info, filename, options)` writes it.
- `camstream.png.encode_png(mem, info)` returns a PNG for a `BGR888` frame,
  saved with low compression for speed; `png_save(...)` writes it.
- `camstream.yuv.yuv_save(mem, info, filename, options)` writes raw data:
  planar YUV420 from `YUV420` or `YUYV` frames when `options.encoding` is
  `"yuv420"`, and packed rows from `RGB888`, `BGR888`, `RGB161616` or
  `BGR161616` frames when it is `"rgb24"` or `"rgb48"`.
- `camstream.dng.dng_save(mem, info, metadata, filename, cam_model, options)`
  writes a DNG from a Bayer raw frame: CSI-2 packed 10/12-bit, unpacked
  10/12/16-bit, or PiSP compressed. The first directory holds a small
  greyscale thumbnail; the raw image is a sub-directory. From the `metadata`
  mapping it uses `SensorBlackLevels`, `ExposureTime` (µs), `AnalogueGain`,
  `ColourGains`, `ColourCorrectionMatrix` and `LensPosition`, with defaults
  where they are missing. The helpers `unpack_10bit`, `unpack_12bit`,
  `unpack_16bit`, `uncompress`, `dequantize`, `postprocess`, the `Matrix`
  class and the `BAYER_FORMATS` table are public too.
- `camstream.jpeg.jpeg_save(mem, info, metadata, filename, cam_model, options)`
  writes a JPEG from a `YUV420` or `YUYV` frame with an EXIF block holding the
  make, model, software, date and, from `metadata`, `ExposureTime`,
  `AnalogueGain` × `DigitalGain` (as ISO) and `LensPosition`. When
  `options.thumb_quality` is non-zero a thumbnail of
  `thumb_width` × `thumb_height` is embedded, its quality lowered in steps of 5
  until it is under 60000 bytes.

### Extra EXIF tags

Each string in `StillOptions.exif` has the form `IFD.Tag=value[,value...]`,
for example `IFD0.Artist=someone` or `GPS.GPSLatitude=51/1,30/1,0/1`.
IFD names are `IFD0`, `IFD1`, `EXIF`, `GPS` and `EINT`. Rationals are written
`num/den`. Unknown tag names are logged and ignored. The parser is available
as `camstream.jpeg.read_exif_tag(exif, text)` on an `ExifData`, whose
`save()` returns the `Exif\0\0` payload; `yuv_to_jpeg(...)` and
`create_exif_data(...)` are available on their own as well.

## Acoustic focus feedback

`camstream.acoustic_focus.AcousticFocusStage` maps the autofocus figure of
merit to a tone so focus can be judged by ear:

```python
from camstream.acoustic_focus import AcousticFocusStage

stage = AcousticFocusStage()
stage.read({"minFoM": 1, "maxFoM": 3000, "minFreq": 300, "maxFreq": 3000,
            "duration": 0.1, "mapping": "log"})
stage.process({"FocusFoM": 850})   # plays at most one tone per second
```

`tone_frequency(fom)` gives the frequency (logarithmic or linear mapping,
clamped to the range) and `play_command(freq)` the command line. Tones are
played in the background by `/usr/bin/play`; a different `runner` and `clock`
can be passed to the constructor.

## What this package does not do

It does not talk to a camera, does not encode video, and has no video stream
outputs (files, network or circular buffers). It provides no command-line
program: it is a library to call from your own capture code.

## Installing

    pip install camstream

Run the tests with:

    pip install camstream[test]
    pytest