# extraformats

This package provides image handlers for WBMP and WebP, and an encoder for
TIFF. The handlers share one interface and work on binary streams such as
open files or `io.BytesIO`.

## Installation

```
pip install extraformats
```

WebP support uses Pillow, which must be built with WebP enabled.

To run the tests as well:

```
pip install "extraformats[test]"
pytest
```

## The shared model: `extraformats.imageio`

- `Image` is an in-memory raster. It holds `width`, `height`, a pixel
  `format` (`ImageFormat`), a flat `pixels` list, a `color_table` for
  indexed formats, `dots_per_meter_x` / `dots_per_meter_y` and an optional
  `icc_profile`. Its methods are `is_null()`, `pixel(x, y)`,
  `set_pixel(x, y, value)`, `fill(value)`, `row(y)`, `has_alpha_channel()`,
  `copy()` and `convert_to_format(image_format)`. Two images compare equal
  when they have the same size, the same format and the same pixels.
- `ImageFormat` lists the pixel formats: mono, indexed, grayscale, 8-bit
  RGB(A), 16-bit RGBA and half- and single-precision float RGBA. Each
  format has a `depth` and a `has_alpha` flag.
- `ImageHandler` is the abstract base of the handlers. Its methods are
  `can_read()`, `read()`, `write(image)`, `option(option)`,
  `set_option(option, value)`, `supports_option(option)`, `image_count()`,
  `current_image_number()`, `jump_to_next_image()` and
  `jump_to_image(image_number)`.
- `ImagePlugin` is a factory for handlers. `capabilities(device, fmt)`
  returns a `Capability` flag (`CAN_READ`, `CAN_WRITE`), and
  `create(device, fmt)` builds a handler bound to the device.
- `Transformation` and `ImageOption` are the enumerations the handlers use.
- `allocate_image(width, height, image_format)` creates a blank image. It
  rejects empty sizes and sizes over the allocation limit.
- `exif_to_transformation` and `transformation_to_exif` convert between
  EXIF orientation values (1 to 8) and `Transformation`.

Every failure to read or write raises `ImageIOError`.

## WBMP: `extraformats.wbmp`

- `WbmpHandler` reads and writes type-0 monochrome WBMP images.
  `can_read()` checks the header, and also checks that the data length
  matches the image size. The handler supports the `ImageOption.SIZE` and
  `ImageOption.IMAGE_FORMAT` options.
- `WbmpPlugin` is the factory for the `"wbmp"` format.
- `WbmpHeader`, `read_header`, `write_header`, `read_multibyte_int` and
  `write_multibyte_int` are the low-level header and integer helpers.

Before an image is written it is converted to mono. If the colour table
has a lighter first entry than its second, the pixels are inverted so the
output follows the WBMP black/white convention.

## WebP: `extraformats.webp`

- `WebpHandler` reads still and animated WebP files. For an animation,
  each call to `read()` draws the next frame onto a full-size canvas and
  returns that canvas. The handler also provides `image_count()`,
  `current_image_number()`, `current_image_rect()`, `loop_count()` and
  `next_image_delay()`.
- The handler supports these options: `QUALITY`, `SIZE`, `ANIMATION` and
  `BACKGROUND_COLOR`.
- `write(image)` encodes a single image. A quality below 100 gives lossy
  output. A quality of 100 gives lossless output. If the image has an ICC
  profile, it is embedded.
- `WebpPlugin` is the factory for the `"webp"` format.

## TIFF writing: `extraformats.tiffwrite`

- `write_tiff(stream, image, compression, transformation)` writes a
  single-page little-endian TIFF with the image in strips. The
  compression is `TiffCompression.NONE` or `TiffCompression.LZW`.
- It chooses the photometric interpretation, bits per sample and extra
  samples from the image format. It also writes the resolution, the
  orientation and, if the image has one, an ICC profile.
- `check_grayscale(color_table)` and `effective_color_table(image)` are
  the helpers that decide between a grayscale and a palette encoding.

## Example

```python
import io
from extraformats.imageio import ImageFormat, allocate_image
from extraformats.wbmp import WbmpHandler
from extraformats.tiffwrite import TiffCompression, write_tiff

image = allocate_image(16, 8, ImageFormat.MONO)
image.fill(1)

buffer = io.BytesIO()
WbmpHandler(buffer).write(image)

buffer.seek(0)
handler = WbmpHandler(buffer)
if handler.can_read():
    decoded = handler.read()
    print(decoded.width, decoded.height)

with open("out.tiff", "wb") as f:
    write_tiff(f, image, TiffCompression.LZW)
```

## What this package does not do

- It has no TIFF reader and no TIFF handler or plugin. TIFF files can be
  written with `write_tiff`, but they cannot be decoded.
- It does not write animated WebP.
- It has no command-line tool. It is a library only.