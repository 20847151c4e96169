"""Decode, detect, mask, encode."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dukeface.errors import PIPELINE_ERRORS, DecodeError
from dukeface.ml.overlay import apply_mask
from dukeface.ml.preprocessing import EncodedImage

if TYPE_CHECKING:
    from dukeface.ml.face_detector import FaceDetector
    from dukeface.ml.preprocessing import ImageCodec

logger = logging.getLogger(__name__)


class ImagePipeline:
    """Applies the Duke mask to every face found in an image.

    Holds no per-call state: each call decodes its own buffer, so one
    instance can be shared by concurrent request handlers and listeners.
    """

    def __init__(self, detector: FaceDetector, codec: ImageCodec) -> None:
        self._detector = detector
        self._codec = codec

    @property
    def detector(self) -> FaceDetector:
        return self._detector

    def render(self, image_bytes: bytes) -> EncodedImage:
        """Process an image and return the encoded result with its format.

        Raises:
            DecodeError, InvalidInput, DetectorUnavailable, EncodeError
        """
        if image_bytes is None:
            raise DecodeError("Image data is missing")

        decoded = self._codec.decode(image_bytes)
        faces = self._detector.detect(decoded.pixels)
        for face in faces:
            apply_mask(decoded.pixels, face)

        fmt = self._codec.output_format_for(decoded.source_format)
        return EncodedImage(
            data=self._codec.encode(decoded.pixels, fmt),
            format=fmt,
            faces=len(faces),
        )

    def process(self, image_bytes: bytes) -> bytes:
        """Process an image and return the encoded bytes."""
        return self.render(image_bytes).data

    def process_quietly(self, image_bytes: bytes) -> None:
        """Process an image, discard the result, and log failures instead of raising."""
        try:
            result = self.render(image_bytes)
        except PIPELINE_ERRORS as exc:
            logger.warning("Image processing failed (%s): %s", type(exc).__name__, exc)
            return
        logger.info("Processed image: %d faces, %d bytes discarded", result.faces, len(result.data))
