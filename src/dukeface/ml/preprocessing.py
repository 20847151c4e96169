"""Image decoding and encoding.

Handles format sniffing, decoding uploaded bytes into BGR uint8 arrays,
size validation, and encoding processed arrays back to bytes.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image

from dukeface.errors import DecodeError, EncodeError, InvalidInput

if TYPE_CHECKING:
    from numpy.typing import NDArray


class ImageFormat(StrEnum):
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"
    BMP = "bmp"
    TIFF = "tiff"
    GIF = "gif"


_SIGNATURES: list[tuple[bytes, ImageFormat]] = [
    (b"\x89PNG\r\n\x1a\n", ImageFormat.PNG),
    (b"\xff\xd8\xff", ImageFormat.JPEG),
    (b"BM", ImageFormat.BMP),
    (b"II*\x00", ImageFormat.TIFF),
    (b"MM\x00*", ImageFormat.TIFF),
    (b"GIF87a", ImageFormat.GIF),
    (b"GIF89a", ImageFormat.GIF),
]

_EXTENSIONS: dict[ImageFormat, str] = {
    ImageFormat.PNG: ".png",
    ImageFormat.JPEG: ".jpg",
    ImageFormat.WEBP: ".webp",
    ImageFormat.BMP: ".bmp",
    ImageFormat.TIFF: ".tiff",
}

MEDIA_TYPES: dict[ImageFormat, str] = {
    ImageFormat.PNG: "image/png",
    ImageFormat.JPEG: "image/jpeg",
    ImageFormat.WEBP: "image/webp",
    ImageFormat.BMP: "image/bmp",
    ImageFormat.TIFF: "image/tiff",
    ImageFormat.GIF: "image/gif",
}


def sniff_format(data: bytes) -> ImageFormat | None:
    """Guess an image format from its leading bytes."""
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ImageFormat.WEBP
    for signature, fmt in _SIGNATURES:
        if data.startswith(signature):
            return fmt
    return None


def read_dimensions(data: bytes) -> tuple[int, int] | None:
    """Return (width, height) from the image header without decoding pixels.

    Returns None when Pillow cannot identify the header; OpenCV gets the
    final say on those.

    Raises:
        InvalidInput: If Pillow flags the header as a decompression bomb.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except Image.DecompressionBombError as exc:
        raise InvalidInput(str(exc)) from exc
    except (OSError, SyntaxError, ValueError, EOFError):
        return None


@dataclass(frozen=True)
class DecodedImage:
    """A decoded pixel buffer together with the format it was read from."""

    pixels: NDArray[np.uint8]
    source_format: ImageFormat | None


@dataclass(frozen=True)
class EncodedImage:
    """Encoded image bytes and their media type."""

    data: bytes
    format: ImageFormat
    faces: int = 0

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self.format]


class ImageCodec:
    """Converts between raw image bytes and BGR uint8 arrays."""

    def __init__(
        self,
        *,
        output_format: str = "auto",
        jpeg_quality: int = 95,
        max_image_pixels: int = 16_777_216,
    ) -> None:
        self._output_format = None if output_format == "auto" else ImageFormat(output_format)
        self._jpeg_quality = jpeg_quality
        self._max_image_pixels = max_image_pixels

    def decode(self, image_bytes: bytes) -> DecodedImage:
        """Decode raw image bytes into an HxWx3 BGR uint8 array.

        Raises:
            DecodeError: If the bytes are empty or not a supported image.
            InvalidInput: If the image exceeds the pixel limit.
        """
        if not image_bytes:
            raise DecodeError("Image data is empty")

        header_size = read_dimensions(image_bytes)
        if header_size is not None:
            self._check_size(*header_size)

        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        try:
            pixels = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        except cv2.error as exc:
            raise DecodeError(f"Failed to decode image: {exc}") from exc
        if pixels is None:
            raise DecodeError("Unsupported or malformed image data")

        height, width = pixels.shape[:2]
        self._check_size(width, height)

        return DecodedImage(pixels=pixels, source_format=sniff_format(image_bytes))

    def _check_size(self, width: int, height: int) -> None:
        if width * height > self._max_image_pixels:
            raise InvalidInput(f"Image has {width * height} pixels, limit is {self._max_image_pixels}")

    def output_format_for(self, source_format: ImageFormat | None) -> ImageFormat:
        """Choose the output format: configured, else the source's, else PNG."""
        if self._output_format is not None:
            return self._output_format
        if source_format is not None and source_format in _EXTENSIONS:
            return source_format
        return ImageFormat.PNG

    def encode(self, pixels: NDArray[np.uint8], fmt: ImageFormat) -> bytes:
        """Encode a pixel buffer.

        Raises:
            EncodeError: If OpenCV cannot write the buffer in the requested format.
        """
        extension = _EXTENSIONS.get(fmt)
        if extension is None:
            raise EncodeError(f"Cannot encode images as {fmt}")

        params: list[int] = []
        if fmt is ImageFormat.JPEG:
            params = [cv2.IMWRITE_JPEG_QUALITY, self._jpeg_quality]

        try:
            ok, encoded = cv2.imencode(extension, pixels, params)
        except cv2.error as exc:
            raise EncodeError(f"Failed to encode image as {fmt}: {exc}") from exc
        if not ok:
            raise EncodeError(f"Failed to encode image as {fmt}")
        return encoded.tobytes()
