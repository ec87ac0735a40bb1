"""
Detection data transfer object.

This module defines the Detection dataclass: one parsed row of the
detection output tensor. It is intentionally minimal, a frozen,
serializable container with no behavior beyond data access.

Non-goals:
    - No rendering logic.
    - No coordinate transformation methods (that belongs in postprocessor).
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Detection:
    """A single detected object.

    Attributes:
        image_index: Index of the image within the decoded batch.
        label: Class label (never the background label).
        confidence: Detection confidence score.
        xmin: Left edge.
        ymin: Top edge.
        xmax: Right edge.
        ymax: Bottom edge.

    Coordinates are normalized to [0, 1] unless the detection was
    parsed with image sizes, in which case they are absolute pixels.
    """

    image_index: int
    label: int
    confidence: float
    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def to_dict(self) -> dict:
        """Return a plain dict suitable for JSON serialization."""
        return {
            "image_index": self.image_index,
            "label": self.label,
            "confidence": round(self.confidence, 4),
            "xmin": self.xmin,
            "ymin": self.ymin,
            "xmax": self.xmax,
            "ymax": self.ymax,
        }

    @property
    def width(self) -> float:
        """Bounding box width."""
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        """Bounding box height."""
        return self.ymax - self.ymin

    @property
    def area(self) -> float:
        """Bounding box area."""
        return self.width * self.height
