"""
Parsing of the detection output tensor.

Responsibility:
    Turn the fixed-capacity [N, 7] tensor produced by DetectionDecoder
    (or an inference engine's DetectionOutput layer) into a list of
    Detection objects. Skip padding rows, apply an optional confidence
    threshold, and optionally map coordinates to pixel space.

Non-goals:
    - No drawing, saving, or display logic.
    - No decoding or suppression; rows are taken as final.

Hard-coded:
    - Row layout: [image_index, label, confidence, xmin, ymin, xmax, ymax]
      with coordinates normalized to [0, 1].
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from detection_output.detection import Detection


def postprocess(
    detection_output: np.ndarray,
    image_sizes: Optional[Sequence[Tuple[int, int]]] = None,
    confidence_threshold: float = 0.0,
) -> List[Detection]:
    """Parse a detection output tensor into a list of Detection objects.

    Args:
        detection_output: Tensor of shape (N, 7) or (1, 1, N, 7).
        image_sizes: Optional (width, height) per image index. When given,
                     coordinates are scaled to pixels and clamped to the
                     image bounds.
        confidence_threshold: Minimum confidence to accept a detection.

    Returns:
        List of Detection objects in tensor order (ascending image
        index, descending confidence). Empty if nothing qualifies.

    Raises:
        ValueError: If the tensor does not hold whole 7-element rows, or
                    a row refers to an image without a size.
    """
    raw = np.asarray(detection_output, dtype=np.float32)
    if raw.size % 7 != 0:
        raise ValueError(
            f"Detection output must hold whole 7-element rows, got shape {raw.shape}."
        )
    raw = raw.reshape(-1, 7)

    detections: List[Detection] = []

    for i in range(raw.shape[0]):
        image_index = int(raw[i, 0])
        confidence = float(raw[i, 2])

        # Padding rows and engines that zero unused rows instead
        if image_index < 0 or confidence == 0.0:
            continue

        if confidence < confidence_threshold:
            continue

        xmin, ymin, xmax, ymax = (float(v) for v in raw[i, 3:7])

        if image_sizes is not None:
            if image_index >= len(image_sizes):
                raise ValueError(
                    f"Row {i} refers to image {image_index}, but only "
                    f"{len(image_sizes)} image size(s) were given."
                )
            width, height = image_sizes[image_index]

            # Un-normalize coordinates from [0, 1] to absolute pixels
            xmin, xmax = xmin * width, xmax * width
            ymin, ymax = ymin * height, ymax * height

            # Clamp to frame boundaries
            xmin = max(0.0, min(xmin, width - 1.0))
            ymin = max(0.0, min(ymin, height - 1.0))
            xmax = max(0.0, min(xmax, width - 1.0))
            ymax = max(0.0, min(ymax, height - 1.0))

        # Skip degenerate boxes
        if xmax <= xmin or ymax <= ymin:
            continue

        detections.append(Detection(
            image_index=image_index,
            label=int(raw[i, 1]),
            confidence=confidence,
            xmin=xmin, ymin=ymin, xmax=xmax, ymax=ymax,
        ))

    return detections
