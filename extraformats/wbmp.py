"""Reading and writing of Wireless Bitmap (WBMP type 0) images."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .imageio import (
    Capability, Image, ImageFormat, ImageHandler, ImageIOError, ImageOption, ImagePlugin,
    allocate_image, is_sequential, q_gray,
)

log = logging.getLogger(__name__)

_MAX_INT_BYTES = 4


@dataclass
class WbmpHeader:
    type: int = 0
    format: int = 0
    width: int = 0
    height: int = 0


def read_multibyte_int(stream: BinaryIO) -> int:
    """Read a WBMP variable-length integer of at most four bytes."""
    result = 0
    for _ in range(_MAX_INT_BYTES):
        byte = stream.read(1)
        if not byte:
            raise ImageIOError("unexpected end of WBMP data")
        c = byte[0]
        result = (result << 7) | (c & 0x7F)
        if not c & 0x80:
            return result
    raise ImageIOError("WBMP integer is too long")


def write_multibyte_int(stream: BinaryIO, num: int) -> None:
    groups = [num & 0x7F]
    num >>= 7
    while num:
        groups.append((num & 0x7F) | 0x80)
        num >>= 7
    stream.write(bytes(reversed(groups)))


def read_header(stream: BinaryIO) -> WbmpHeader:
    fixed = stream.read(2)
    if len(fixed) != 2:
        raise ImageIOError("truncated WBMP header")
    width = read_multibyte_int(stream)
    height = read_multibyte_int(stream)
    return WbmpHeader(fixed[0], fixed[1], width, height)


def write_header(stream: BinaryIO, header: WbmpHeader) -> None:
    stream.write(bytes((header.type, header.format)))
    write_multibyte_int(stream, header.width)
    write_multibyte_int(stream, header.height)


def _bytes_per_line(width: int) -> int:
    return (width + 7) // 8


class WbmpHandler(ImageHandler):
    """Handler for monochrome WBMP images."""

    @staticmethod
    def can_read_device(device: Optional[BinaryIO]) -> bool:
        if device is None or is_sequential(device):
            return False
        old_pos = device.tell()
        try:
            header = read_header(device)
            if header.type != 0 or header.format != 0:
                return False
            image_size = header.height * _bytes_per_line(header.width)
            here = device.tell()
            available = device.seek(0, 2) - here
            return image_size == available
        except ImageIOError:
            return False
        finally:
            device.seek(old_pos)

    def can_read(self) -> bool:
        if self.device is None:
            log.warning("WbmpHandler.can_read() called with no device")
            return False
        if self.can_read_device(self.device):
            self.format = "wbmp"
            return True
        return False

    def read(self) -> Image:
        if self.device is None:
            raise ImageIOError("no device")
        header = read_header(self.device)
        image = allocate_image(header.width, header.height, ImageFormat.MONO)
        bpl = _bytes_per_line(header.width)
        pixels = []
        for _ in range(header.height):
            line = self.device.read(bpl)
            if len(line) != bpl:
                raise ImageIOError("truncated WBMP data")
            pixels.extend((line[x >> 3] >> (7 - (x & 7))) & 1 for x in range(header.width))
        image.pixels = pixels
        return image

    def write(self, image: Image) -> None:
        if image.is_null():
            raise ImageIOError("cannot write a null image")
        if self.device is None:
            raise ImageIOError("no device")
        if image.format is not ImageFormat.MONO:
            image = image.convert_to_format(ImageFormat.MONO)
        table = image.color_table
        pixels = image.pixels
        if table[0] == table[1]:
            pixels = [0 if q_gray(table[0]) < 128 else 1] * len(pixels)
        elif q_gray(table[0]) > q_gray(table[1]):
            pixels = [p ^ 1 for p in pixels]

        write_header(self.device, WbmpHeader(0, 0, image.width, image.height))
        bpl = _bytes_per_line(image.width)
        for y in range(image.height):
            line = bytearray(bpl)
            for x, bit in enumerate(pixels[y * image.width:(y + 1) * image.width]):
                if bit:
                    line[x >> 3] |= 0x80 >> (x & 7)
            self.device.write(bytes(line))

    def option(self, option: ImageOption):
        if option is ImageOption.SIZE:
            if self.device is None or is_sequential(self.device):
                return None
            old_pos = self.device.tell()
            try:
                header = read_header(self.device)
                return (header.width, header.height)
            except ImageIOError:
                return None
            finally:
                self.device.seek(old_pos)
        if option is ImageOption.IMAGE_FORMAT:
            return ImageFormat.MONO
        return None

    def supports_option(self, option: ImageOption) -> bool:
        return option in (ImageOption.SIZE, ImageOption.IMAGE_FORMAT)


class WbmpPlugin(ImagePlugin):
    """Plugin offering the WBMP handler."""

    formats = ("wbmp",)
    handler_class = WbmpHandler

    def capabilities(self, device: Optional[BinaryIO], fmt: str) -> Capability:
        """Report whether WBMP data can be read from or written to the device."""
        return super().capabilities(device, fmt)

    def create(self, device: Optional[BinaryIO], fmt: str = "") -> WbmpHandler:
        """Make a WBMP handler bound to the device."""
        return super().create(device, fmt)