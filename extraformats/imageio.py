"""Core image model and the handler/plugin interfaces shared by the format codecs."""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

log = logging.getLogger(__name__)

MAX_ALLOCATION_BYTES = 256 * 1024 * 1024
DEFAULT_DOTS_PER_METER = 3780


class ImageIOError(Exception):
    """Raised when an image cannot be read or written."""


class Transformation(enum.IntFlag):
    NONE = 0
    MIRROR = 1
    FLIP = 2
    ROTATE_180 = 3
    ROTATE_90 = 4
    MIRROR_AND_ROTATE_90 = 5
    FLIP_AND_ROTATE_90 = 6
    ROTATE_270 = 7


class ImageOption(enum.Enum):
    SIZE = enum.auto()
    CLIP_RECT = enum.auto()
    DESCRIPTION = enum.auto()
    SCALED_CLIP_RECT = enum.auto()
    SCALED_SIZE = enum.auto()
    COMPRESSION_RATIO = enum.auto()
    GAMMA = enum.auto()
    QUALITY = enum.auto()
    NAME = enum.auto()
    SUB_TYPE = enum.auto()
    INCREMENTAL_READING = enum.auto()
    ENDIANNESS = enum.auto()
    ANIMATION = enum.auto()
    BACKGROUND_COLOR = enum.auto()
    IMAGE_FORMAT = enum.auto()
    SUPPORTED_SUB_TYPES = enum.auto()
    OPTIMIZED_WRITE = enum.auto()
    PROGRESSIVE_SCAN_WRITE = enum.auto()
    IMAGE_TRANSFORMATION = enum.auto()


class Capability(enum.Flag):
    NONE = 0
    CAN_READ = enum.auto()
    CAN_WRITE = enum.auto()
    CAN_READ_INCREMENTAL = enum.auto()


class ImageFormat(enum.Enum):
    """Pixel formats with their bit depth and whether they carry alpha."""

    INVALID = (0, 0, False)
    MONO = (1, 1, False)
    MONO_LSB = (2, 1, False)
    INDEXED8 = (3, 8, False)
    RGB32 = (4, 32, False)
    ARGB32 = (5, 32, True)
    ARGB32_PREMULTIPLIED = (6, 32, True)
    RGB888 = (7, 24, False)
    RGBA8888 = (8, 32, True)
    RGBA8888_PREMULTIPLIED = (9, 32, True)
    ALPHA8 = (10, 8, True)
    GRAYSCALE8 = (11, 8, False)
    GRAYSCALE16 = (12, 16, False)
    RGBX64 = (13, 64, False)
    RGBA64 = (14, 64, True)
    RGBA64_PREMULTIPLIED = (15, 64, True)
    RGBX16FPX4 = (16, 64, False)
    RGBA16FPX4 = (17, 64, True)
    RGBA16FPX4_PREMULTIPLIED = (18, 64, True)
    RGBX32FPX4 = (19, 128, False)
    RGBA32FPX4 = (20, 128, True)
    RGBA32FPX4_PREMULTIPLIED = (21, 128, True)

    @property
    def depth(self) -> int:
        return self.value[1]

    @property
    def has_alpha(self) -> bool:
        return self.value[2]

    @property
    def is_indexed(self) -> bool:
        return self in _INDEXED

    @property
    def is_premultiplied(self) -> bool:
        return self.name.endswith("PREMULTIPLIED")


_INDEXED = {ImageFormat.MONO, ImageFormat.MONO_LSB, ImageFormat.INDEXED8}
_ARGB_INT = {
    ImageFormat.RGB32, ImageFormat.ARGB32, ImageFormat.ARGB32_PREMULTIPLIED,
    ImageFormat.RGB888, ImageFormat.RGBA8888, ImageFormat.RGBA8888_PREMULTIPLIED,
}
_RGBA16_INT = {ImageFormat.RGBX64, ImageFormat.RGBA64, ImageFormat.RGBA64_PREMULTIPLIED}
_RGBA_FLOAT = {
    ImageFormat.RGBX16FPX4, ImageFormat.RGBA16FPX4, ImageFormat.RGBA16FPX4_PREMULTIPLIED,
    ImageFormat.RGBX32FPX4, ImageFormat.RGBA32FPX4, ImageFormat.RGBA32FPX4_PREMULTIPLIED,
}


def q_rgb(r: int, g: int, b: int) -> int:
    return 0xFF000000 | (r << 16) | (g << 8) | b


def q_rgba(r: int, g: int, b: int, a: int) -> int:
    return (a << 24) | (r << 16) | (g << 8) | b


def q_gray(argb: int) -> int:
    r, g, b = (argb >> 16) & 0xFF, (argb >> 8) & 0xFF, argb & 0xFF
    return (r * 11 + g * 16 + b * 5) // 32


def _default_value(fmt: ImageFormat):
    if fmt in _RGBA16_INT:
        return (0, 0, 0, 0)
    if fmt in _RGBA_FLOAT:
        return (0.0, 0.0, 0.0, 0.0)
    return 0


def _argb_to_float(argb: int) -> tuple:
    return (((argb >> 16) & 0xFF) / 255, ((argb >> 8) & 0xFF) / 255,
            (argb & 0xFF) / 255, ((argb >> 24) & 0xFF) / 255)


def _unpremultiply(r, g, b, a):
    if a <= 0:
        return (0.0, 0.0, 0.0, 0.0)
    return (min(r / a, 1.0), min(g / a, 1.0), min(b / a, 1.0), a)


def _to8(v: float) -> int:
    return max(0, min(255, round(v * 255)))


def _to16(v: float) -> int:
    return max(0, min(65535, round(v * 65535)))


@dataclass(eq=False)
class Image:
    """A raster image; pixel values are stored in the native form of the format.

    Indexed formats hold palette indices, 8-bit colour formats hold 0xAARRGGBB
    integers, 64-bit formats hold (r, g, b, a) 16-bit tuples and floating-point
    formats hold (r, g, b, a) float tuples.
    """

    width: int = 0
    height: int = 0
    format: ImageFormat = ImageFormat.INVALID
    pixels: list = field(default_factory=list)
    color_table: list = field(default_factory=list)
    dots_per_meter_x: int = DEFAULT_DOTS_PER_METER
    dots_per_meter_y: int = DEFAULT_DOTS_PER_METER
    icc_profile: Optional[bytes] = None

    def __post_init__(self) -> None:
        if not self.pixels:
            self.pixels = [_default_value(self.format)] * (self.width * self.height)
        elif len(self.pixels) != self.width * self.height:
            raise ValueError("pixel count does not match image size")
        if self.format in (ImageFormat.MONO, ImageFormat.MONO_LSB) and not self.color_table:
            self.color_table = [0xFF000000, 0xFFFFFFFF]

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    @property
    def depth(self) -> int:
        return self.format.depth

    def is_null(self) -> bool:
        return self.width <= 0 or self.height <= 0 or self.format is ImageFormat.INVALID

    def _index(self, x: int, y: int) -> int:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"pixel ({x}, {y}) outside {self.width}x{self.height} image")
        return y * self.width + x

    def pixel(self, x: int, y: int):
        return self.pixels[self._index(x, y)]

    def set_pixel(self, x: int, y: int, value) -> None:
        self.pixels[self._index(x, y)] = value

    def fill(self, value) -> None:
        self.pixels = [value] * (self.width * self.height)

    def row(self, y: int) -> list:
        self._index(0, y)
        return self.pixels[y * self.width:(y + 1) * self.width]

    def has_alpha_channel(self) -> bool:
        if self.format.has_alpha:
            return True
        if self.format.is_indexed:
            return any((c >> 24) != 0xFF for c in self.color_table)
        return False

    def copy(self) -> "Image":
        return Image(self.width, self.height, self.format, list(self.pixels),
                     list(self.color_table), self.dots_per_meter_x,
                     self.dots_per_meter_y, self.icc_profile)

    def _rgbaf(self, value) -> tuple:
        fmt = self.format
        if fmt.is_indexed:
            argb = self.color_table[value] if value < len(self.color_table) else 0xFF000000
            return _argb_to_float(argb)
        if fmt is ImageFormat.GRAYSCALE8:
            return (value / 255,) * 3 + (1.0,)
        if fmt is ImageFormat.GRAYSCALE16:
            return (value / 65535,) * 3 + (1.0,)
        if fmt is ImageFormat.ALPHA8:
            return (0.0, 0.0, 0.0, value / 255)
        if fmt in _ARGB_INT:
            rgba = _argb_to_float(value)
        elif fmt in _RGBA16_INT:
            rgba = tuple(c / 65535 for c in value)
        else:
            rgba = tuple(float(c) for c in value)
        if not fmt.has_alpha:
            return rgba[:3] + (1.0,)
        if fmt.is_premultiplied:
            return _unpremultiply(*rgba)
        return rgba

    def _from_rgbaf(self, fmt: ImageFormat, rgba: tuple):
        r, g, b, a = rgba
        if not fmt.has_alpha:
            a = 1.0
        gray = (r * 11 + g * 16 + b * 5) / 32
        if fmt is ImageFormat.GRAYSCALE8:
            return _to8(gray)
        if fmt is ImageFormat.GRAYSCALE16:
            return _to16(gray)
        if fmt is ImageFormat.ALPHA8:
            return _to8(a)
        if fmt.is_premultiplied:
            r, g, b = r * a, g * a, b * a
        if fmt in _ARGB_INT:
            return q_rgba(_to8(r), _to8(g), _to8(b), _to8(a))
        if fmt in _RGBA16_INT:
            return (_to16(r), _to16(g), _to16(b), _to16(a))
        return (r, g, b, a)

    def convert_to_format(self, image_format: ImageFormat) -> "Image":
        """Return a copy of the image in another pixel format."""
        if image_format is ImageFormat.INVALID:
            raise ValueError("cannot convert to an invalid format")
        if image_format is self.format or self.is_null():
            result = self.copy()
            result.format = image_format if not self.is_null() else self.format
            return result
        meta = dict(dots_per_meter_x=self.dots_per_meter_x,
                    dots_per_meter_y=self.dots_per_meter_y, icc_profile=self.icc_profile)
        if image_format.is_indexed and self.format.is_indexed and (
                image_format is ImageFormat.INDEXED8
                or self.format in (ImageFormat.MONO, ImageFormat.MONO_LSB)):
            return Image(self.width, self.height, image_format, list(self.pixels),
                         list(self.color_table), **meta)
        if image_format in (ImageFormat.MONO, ImageFormat.MONO_LSB):
            pixels = [0 if _to8(sum(w * c for w, c in zip((11, 16, 5), self._rgbaf(p)[:3])) / 32) >= 128 else 1
                      for p in self.pixels]
            return Image(self.width, self.height, image_format, pixels,
                         [0xFFFFFFFF, 0xFF000000], **meta)
        if image_format is ImageFormat.INDEXED8:
            colors = [q_rgba(*(_to8(c) for c in self._rgbaf(p))) for p in self.pixels]
            unique = list(dict.fromkeys(colors))
            if len(unique) <= 256:
                lookup = {c: i for i, c in enumerate(unique)}
                return Image(self.width, self.height, image_format,
                             [lookup[c] for c in colors], unique, **meta)
            table = [q_rgb(r * 51, g * 51, b * 51)
                     for r in range(6) for g in range(6) for b in range(6)]
            pixels = [round(((c >> 16) & 0xFF) / 51) * 36 + round(((c >> 8) & 0xFF) / 51) * 6
                      + round((c & 0xFF) / 51) for c in colors]
            return Image(self.width, self.height, image_format, pixels, table, **meta)
        pixels = [self._from_rgbaf(image_format, self._rgbaf(p)) for p in self.pixels]
        return Image(self.width, self.height, image_format, pixels, **meta)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Image):
            return NotImplemented
        if self.size != other.size or self.format is not other.format:
            return False
        if self.format.is_indexed:
            return [self._rgbaf(p) for p in self.pixels] == [other._rgbaf(p) for p in other.pixels]
        return self.pixels == other.pixels


def allocate_image(width: int, height: int, image_format: ImageFormat) -> Image:
    """Create a blank image, refusing empty or unreasonably large sizes."""
    if width <= 0 or height <= 0:
        raise ImageIOError(f"invalid image size {width}x{height}")
    if image_format is ImageFormat.INVALID:
        raise ImageIOError("invalid image format")
    bytes_per_line = (width * image_format.depth + 31) // 32 * 4
    if bytes_per_line * height > MAX_ALLOCATION_BYTES:
        raise ImageIOError(f"image {width}x{height} exceeds the allocation limit")
    return Image(width, height, image_format)


_EXIF_TO_TRANSFORMATION = {
    1: Transformation.NONE,
    2: Transformation.MIRROR,
    3: Transformation.ROTATE_180,
    4: Transformation.FLIP,
    5: Transformation.FLIP_AND_ROTATE_90,
    6: Transformation.ROTATE_90,
    7: Transformation.MIRROR_AND_ROTATE_90,
    8: Transformation.ROTATE_270,
}
_TRANSFORMATION_TO_EXIF = {t: o for o, t in _EXIF_TO_TRANSFORMATION.items()}


def exif_to_transformation(orientation: int) -> Transformation:
    try:
        return _EXIF_TO_TRANSFORMATION[orientation]
    except KeyError:
        log.warning("Invalid EXIF orientation")
        return Transformation.NONE


def transformation_to_exif(transformation: Transformation) -> int:
    try:
        return _TRANSFORMATION_TO_EXIF[Transformation(transformation)]
    except (KeyError, ValueError):
        log.warning("Invalid image transformation")
        return 1


def peek(device: BinaryIO, count: int) -> bytes:
    """Read up to ``count`` bytes without moving the stream position."""
    pos = device.tell()
    try:
        return device.read(count)
    finally:
        device.seek(pos)


def is_sequential(device: BinaryIO) -> bool:
    return not device.seekable()


class ImageHandler(ABC):
    """Reads and writes images of one format on a binary stream."""

    def __init__(self, device: Optional[BinaryIO] = None, fmt: str = "") -> None:
        self.device = device
        self.format = fmt

    @abstractmethod
    def can_read(self) -> bool:
        """Whether the device holds data this handler can decode."""

    @abstractmethod
    def read(self) -> Image:
        """Decode the next image from the device."""

    def write(self, image: Image) -> None:
        raise ImageIOError(f"{type(self).__name__} does not support writing")

    def option(self, option: ImageOption):
        return None

    def set_option(self, option: ImageOption, value) -> None:
        pass

    def supports_option(self, option: ImageOption) -> bool:
        return False

    def image_count(self) -> int:
        return 1 if self.can_read() else 0

    def current_image_number(self) -> int:
        return 0

    def jump_to_next_image(self) -> bool:
        return False

    def jump_to_image(self, image_number: int) -> bool:
        return False


class ImagePlugin:
    """Factory for handlers of the formats listed in ``formats``."""

    formats: tuple = ()
    handler_class: type = ImageHandler

    def capabilities(self, device: Optional[BinaryIO], fmt: str) -> Capability:
        if fmt in self.formats:
            return Capability.CAN_READ | Capability.CAN_WRITE
        cap = Capability.NONE
        if fmt or device is None or device.closed:
            return cap
        if device.readable() and self.handler_class.can_read_device(device):
            cap |= Capability.CAN_READ
        if device.writable():
            cap |= Capability.CAN_WRITE
        return cap

    def create(self, device: Optional[BinaryIO], fmt: str = "") -> ImageHandler:
        handler = self.handler_class(device)
        handler.format = fmt
        return handler