"""The Duke mask overlay."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from dukeface.ml.face_detector import Rectangle

# BGR
BLACK: tuple[int, int, int] = (0, 0, 0)
WHITE: tuple[int, int, int] = (255, 255, 255)
RED: tuple[int, int, int] = (0, 0, 255)


def _color(color: tuple[int, int, int], image: NDArray[np.uint8]) -> tuple[int, ...]:
    if image.ndim == 3 and image.shape[2] == 4:
        return (*color, 255)
    return color


def apply_mask(image: NDArray[np.uint8], rect: Rectangle, *, line_type: int = cv2.LINE_AA) -> None:
    """Draw the Duke mask over a face region, in place.

    Black fills the upper half of the rectangle, white the lower half, and a
    red disc of radius (w + h) // 12 sits at (x + h // 2, y + h // 2). The
    centre's x offset uses the height, not the width.

    Drawing outside the image is clipped by OpenCV.
    """
    x, y, w, h = rect.x, rect.y, rect.width, rect.height
    half = h // 2

    cv2.rectangle(image, (x, y), (x + w, y + half), _color(BLACK, image), cv2.FILLED, line_type)
    cv2.rectangle(image, (x, y + half), (x + w, y + h), _color(WHITE, image), cv2.FILLED, line_type)
    cv2.circle(image, (x + half, y + half), max((w + h) // 12, 0), _color(RED, image), cv2.FILLED, line_type)
