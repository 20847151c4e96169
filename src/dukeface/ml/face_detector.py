"""Face detection backed by OpenCV Haar cascades."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import cv2

from dukeface.errors import DetectorUnavailable, InvalidInput

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rectangle:
    """Axis-aligned face region in pixel coordinates, (x, y) = top-left corner."""

    x: int
    y: int
    width: int
    height: int

    def clamp(self, image_width: int, image_height: int) -> Rectangle:
        """Return a copy whose bounds lie within an image of the given size."""
        left = min(max(self.x, 0), image_width)
        top = min(max(self.y, 0), image_height)
        right = min(max(self.x + self.width, 0), image_width)
        bottom = min(max(self.y + self.height, 0), image_height)
        return Rectangle(
            x=min(left, max(image_width - 1, 0)),
            y=min(top, max(image_height - 1, 0)),
            width=max(right - left, 0),
            height=max(bottom - top, 0),
        )


class FaceDetector(Protocol):
    """Protocol for face detectors."""

    @property
    def is_loaded(self) -> bool:
        """Return whether the underlying classifier is usable."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[Rectangle]:
        """Detect faces in an image.

        Args:
            image: HxWx3 (or HxWx4) BGR uint8 array.

        Returns:
            One rectangle per detected face, in the detector's native order.
        """
        ...


def validate_image(image: NDArray[np.uint8] | None) -> tuple[int, int]:
    """Return (width, height) of an image, raising InvalidInput for unusable buffers."""
    if image is None:
        raise InvalidInput("Image buffer is missing")
    if image.ndim not in (2, 3):
        raise InvalidInput(f"Expected a 2-D or 3-D pixel buffer, got {image.ndim} dimensions")
    height, width = image.shape[:2]
    if width == 0 or height == 0:
        raise InvalidInput(f"Image has zero size ({width}x{height})")
    return width, height


class CascadeFaceDetector:
    """Detects faces with a cv2.CascadeClassifier.

    The cascade file is validated once in from_file(). Each worker thread then
    lazily loads its own classifier from the same file, so no native classifier
    is shared between concurrent detect() calls.
    """

    def __init__(
        self,
        classifier_file: Path,
        *,
        scale_factor: float = 1.1,
        min_neighbors: int = 3,
        min_face_size: int = 0,
    ) -> None:
        self._classifier_file = classifier_file
        self._scale_factor = scale_factor
        self._min_neighbors = min_neighbors
        self._min_size = (min_face_size, min_face_size)
        self._local = threading.local()

    @classmethod
    def from_file(
        cls,
        classifier_file: str | Path,
        *,
        scale_factor: float = 1.1,
        min_neighbors: int = 3,
        min_face_size: int = 0,
    ) -> CascadeFaceDetector:
        """Load and validate a cascade file.

        Raises:
            DetectorUnavailable: If the file is missing or is not a valid cascade.
        """
        path = Path(classifier_file)
        logger.info("Loading face classifier from %s", path)
        if not path.is_file():
            raise DetectorUnavailable(f"Classifier file not found: {path}")

        detector = cls(
            path,
            scale_factor=scale_factor,
            min_neighbors=min_neighbors,
            min_face_size=min_face_size,
        )
        detector._classifier()
        return detector

    @property
    def classifier_file(self) -> Path:
        return self._classifier_file

    @property
    def is_loaded(self) -> bool:
        return True

    def detect(self, image: NDArray[np.uint8]) -> list[Rectangle]:
        width, height = validate_image(image)

        if image.ndim == 2:
            gray = image
        elif image.shape[2] == 4:
            gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        else:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

        found = self._classifier().detectMultiScale(
            gray,
            scaleFactor=self._scale_factor,
            minNeighbors=self._min_neighbors,
            minSize=self._min_size,
        )
        faces = [Rectangle(int(x), int(y), int(w), int(h)).clamp(width, height) for (x, y, w, h) in found]
        logger.info("%d faces are detected", len(faces))
        return faces

    def _classifier(self) -> cv2.CascadeClassifier:
        classifier: cv2.CascadeClassifier | None = getattr(self._local, "classifier", None)
        if classifier is not None:
            return classifier

        try:
            classifier = cv2.CascadeClassifier(str(self._classifier_file))
        except cv2.error as exc:
            raise DetectorUnavailable(f"Failed to load classifier {self._classifier_file}: {exc}") from exc
        if classifier.empty():
            raise DetectorUnavailable(f"Classifier file is not a valid cascade: {self._classifier_file}")

        self._local.classifier = classifier
        return classifier


class UnavailableFaceDetector:
    """Stands in for a classifier that failed to load; every detect() fails."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    @property
    def is_loaded(self) -> bool:
        return False

    def detect(self, image: NDArray[np.uint8]) -> list[Rectangle]:
        raise DetectorUnavailable(self.reason)
