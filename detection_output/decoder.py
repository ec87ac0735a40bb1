"""
DetectionDecoder — turns raw SSD-style head outputs into final detections.

Responsibility:
    Decode per-anchor box offsets, filter per-class confidences, run
    greedy per-class NMS, merge classes with a top-k cut, and emit a
    fixed-capacity detection tensor.

Public contract:
    DetectionDecoder.decode(localization, confidence, anchors, batch_size)
        -> np.ndarray of shape (batch_size * keep_top_k, 7)

    Each output row is
    [image_index, class_label, confidence, xmin, ymin, xmax, ymax]
    with normalized coordinates. Real rows come first, grouped by
    ascending image index and sorted by descending confidence within
    an image; unused rows have image_index == -1 and zeros elsewhere.

Constraints:
    - Stateless per call and deterministic. Concurrent calls with
      independent buffers are safe.
    - All shape checks run before any output is written.

Non-goals:
    - No network execution, softmax, or image I/O.
    - No denormalization to pixel coordinates (see postprocessor).
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from detection_output.config import CodeType, DecoderConfig, load_config, validate
from detection_output.errors import ShapeMismatch

logger = logging.getLogger(__name__)

BOX_SIZE = 4
DETECTION_SIZE = 7
PADDING_IMAGE_INDEX = -1.0

# Flat or nested float sequences are accepted wherever an ndarray is.
TensorLike = Union[np.ndarray, Sequence]

_IDENTITY_VARIANCE = np.ones((1, 1, BOX_SIZE), dtype=np.float32)


# ---------------------------------------------------------------------------
# Box coders
# ---------------------------------------------------------------------------
# priors: (P, 1, 4) corners, offsets: (P, L, 4), variances: (P or 1, 1, 4).
# Both return (P, L, 4) corner boxes.

def _decode_corner(priors: np.ndarray, offsets: np.ndarray, variances: np.ndarray) -> np.ndarray:
    return priors + offsets * variances


def _decode_center_size(priors: np.ndarray, offsets: np.ndarray, variances: np.ndarray) -> np.ndarray:
    prior_w = priors[..., 2] - priors[..., 0]
    prior_h = priors[..., 3] - priors[..., 1]
    prior_cx = 0.5 * (priors[..., 0] + priors[..., 2])
    prior_cy = 0.5 * (priors[..., 1] + priors[..., 3])

    cx = variances[..., 0] * offsets[..., 0] * prior_w + prior_cx
    cy = variances[..., 1] * offsets[..., 1] * prior_h + prior_cy
    w = np.exp(variances[..., 2] * offsets[..., 2]) * prior_w
    h = np.exp(variances[..., 3] * offsets[..., 3]) * prior_h

    return np.stack([cx - 0.5 * w, cy - 0.5 * h, cx + 0.5 * w, cy + 0.5 * h], axis=-1)


_BOX_CODERS: Dict[CodeType, Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]] = {
    CodeType.CORNER: _decode_corner,
    CodeType.CENTER_SIZE: _decode_center_size,
}


# ---------------------------------------------------------------------------
# Ranking and suppression
# ---------------------------------------------------------------------------

def select_top_k(scores: np.ndarray, k: int, *tie_keys: np.ndarray) -> np.ndarray:
    """Return indices of the ``k`` best entries, best first.

    Entries are ranked by descending score; equal scores are ordered by
    the ``tie_keys`` ascending, first key most significant. When ``k`` is
    smaller than the number of entries, a partition step narrows the pool
    to every entry scoring at least the k-th best score before sorting,
    so ties straddling the cut are still resolved by the tie keys.
    """
    n = scores.shape[0]
    if k < n:
        kth_best = -np.partition(-scores, k - 1)[k - 1]
        pool = np.flatnonzero(scores >= kth_best)
    else:
        pool = np.arange(n)

    # lexsort treats the last key as primary.
    keys = tuple(key[pool] for key in reversed(tie_keys)) + (-scores[pool],)
    return pool[np.lexsort(keys)][:k]


def box_areas(boxes: np.ndarray) -> np.ndarray:
    """Areas of (N, 4) corner boxes; inverted boxes have zero area."""
    w = boxes[:, 2] - boxes[:, 0]
    h = boxes[:, 3] - boxes[:, 1]
    return np.where((w < 0) | (h < 0), 0.0, w * h)


def iou(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """Intersection-over-union of one corner box against (N, 4) boxes."""
    xx1 = np.maximum(box[0], boxes[:, 0])
    yy1 = np.maximum(box[1], boxes[:, 1])
    xx2 = np.minimum(box[2], boxes[:, 2])
    yy2 = np.minimum(box[3], boxes[:, 3])

    inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
    union = box_areas(box[None, :])[0] + box_areas(boxes) - inter
    return np.where(union > 0, inter / np.where(union > 0, union, 1.0), 0.0)


def nms(boxes: np.ndarray, iou_threshold: float, eta: float = 1.0) -> np.ndarray:
    """Greedy NMS over boxes already sorted best first.

    Expects boxes shape (N, 4) in xyxy. Every box whose IoU with a kept
    box is at or above the current threshold is dropped. With ``eta < 1``
    the threshold decays by ``eta`` after each kept box while it is
    above 0.5. Returns positional indices of kept boxes, in input order.
    """
    if boxes.shape[0] == 0:
        return np.empty((0,), dtype=np.int64)

    threshold = iou_threshold
    order = np.arange(boxes.shape[0])
    keep = []

    while order.size > 0:
        i = order[0]
        keep.append(i)

        overlaps = iou(boxes[i], boxes[order[1:]])
        order = order[1:][overlaps < threshold]

        if eta < 1.0 and threshold > 0.5:
            threshold *= eta

    return np.array(keep, dtype=np.int64)


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class DetectionDecoder:
    """Detection output post-processing for SSD and Faster R-CNN heads.

    Usage:
        decoder = DetectionDecoder()                     # Safe defaults
        decoder = DetectionDecoder(config=my_config)     # Custom config
        output = decoder.decode(loc, conf, priors)       # (keep_top_k, 7)

    The configuration is validated once at construction; the decode
    strategy for the configured code type is selected there too.
    """

    def __init__(self, config: Optional[DecoderConfig] = None) -> None:
        """Initialize the decoder.

        Args:
            config: Decoder configuration. If None, defaults plus
                    environment overrides are used.

        Raises:
            ConfigurationError: If configuration values are invalid.
        """
        if config is None:
            config = load_config()
        validate(config)

        self._config = config
        self._decode_boxes = _BOX_CODERS[config.code_type]

        logger.info(
            "DetectionDecoder initialized (num_classes=%d, code_type=%s, "
            "share_location=%s, nms_threshold=%.2f, keep_top_k=%d)",
            config.num_classes,
            config.code_type.name,
            config.share_location,
            config.nms_threshold,
            config.keep_top_k,
        )

    @property
    def config(self) -> DecoderConfig:
        """Return the active configuration (read-only)."""
        return self._config

    def output_rows(self, batch_size: int = 1) -> int:
        """Number of rows in the output tensor for a batch."""
        return batch_size * self._config.keep_top_k

    def allocate_output(self, batch_size: int = 1) -> np.ndarray:
        """Return an output buffer filled with padding rows."""
        out = np.zeros((self.output_rows(batch_size), DETECTION_SIZE), dtype=np.float32)
        out[:, 0] = PADDING_IMAGE_INDEX
        return out

    def decode(
        self,
        localization: TensorLike,
        confidence: TensorLike,
        anchors: TensorLike,
        batch_size: int = 1,
        variances: Optional[TensorLike] = None,
        out: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Decode raw head outputs into the fixed-capacity detection tensor.

        Args:
            localization: Box offsets, flat or any shape, laid out as
                          (batch, num_priors, num_loc_classes, 4).
            confidence: Class scores laid out as (batch, num_priors, num_classes).
            anchors: Prior boxes laid out as (num_priors, prior_size), with
                     a leading batch dimension when anchors_per_image is set.
            batch_size: Number of images in the batch.
            variances: Optional 4-vector, or one 4-vector per anchor.
                       Identity when omitted or variance_encoded_in_target.
            out: Optional pre-sized buffer to write into.

        Returns:
            Array of shape (batch_size * keep_top_k, 7). When ``out`` is
            given, it is filled and returned.

        Raises:
            ShapeMismatch: If any tensor length disagrees with the
                           configuration. ``out`` is left untouched.
        """
        cfg = self._config
        loc, conf, priors, valid, var = self._check_inputs(
            localization, confidence, anchors, batch_size, variances, out
        )

        result = self.allocate_output(batch_size)
        row = 0
        for image in range(batch_size):
            image_priors = priors[image if cfg.anchors_per_image else 0]
            image_valid = valid[image if cfg.anchors_per_image else 0]
            image_var = var[image if cfg.anchors_per_image else 0]

            labels, scores, boxes = self._decode_image(
                loc[image], conf[image], image_priors, image_valid, image_var
            )

            count = labels.shape[0]
            result[row:row + count, 0] = image
            result[row:row + count, 1] = labels
            result[row:row + count, 2] = scores
            result[row:row + count, 3:] = boxes
            row += count

        logger.debug("Decoded %d detection(s) across %d image(s)", row, batch_size)

        if out is None:
            return result
        out[...] = result.reshape(out.shape)
        return out

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _check_inputs(
        self,
        localization: TensorLike,
        confidence: TensorLike,
        anchors: TensorLike,
        batch_size: int,
        variances: Optional[TensorLike],
        out: Optional[np.ndarray],
    ):
        """Validate tensor lengths and reshape inputs into per-image views."""
        cfg = self._config

        if batch_size < 1:
            raise ShapeMismatch(f"batch_size must be at least 1, got {batch_size}.")

        loc = np.asarray(localization, dtype=np.float32).ravel()
        conf = np.asarray(confidence, dtype=np.float32).ravel()
        anc = np.asarray(anchors, dtype=np.float32).ravel()

        anchor_sets = batch_size if cfg.anchors_per_image else 1
        if anc.size % (anchor_sets * cfg.prior_size) != 0:
            raise ShapeMismatch(
                f"Anchors tensor length {anc.size} is not a multiple of "
                f"{anchor_sets} x prior size {cfg.prior_size}."
            )
        num_priors = anc.size // (anchor_sets * cfg.prior_size)

        expected_loc = batch_size * num_priors * BOX_SIZE * cfg.num_loc_classes
        if loc.size != expected_loc:
            raise ShapeMismatch(
                f"Localization tensor length {loc.size} does not match "
                f"{batch_size} x {num_priors} priors x {BOX_SIZE} x "
                f"{cfg.num_loc_classes} box set(s) = {expected_loc}."
            )

        expected_conf = batch_size * num_priors * cfg.num_classes
        if conf.size != expected_conf:
            raise ShapeMismatch(
                f"Confidence tensor length {conf.size} does not match "
                f"{batch_size} x {num_priors} priors x {cfg.num_classes} "
                f"classes = {expected_conf}."
            )

        var = self._check_variances(variances, anchor_sets, num_priors)

        if out is not None:
            expected_out = self.output_rows(batch_size) * DETECTION_SIZE
            if not isinstance(out, np.ndarray) or out.size != expected_out:
                raise ShapeMismatch(
                    f"Output buffer must be an ndarray with {expected_out} "
                    f"elements, got {getattr(out, 'size', type(out).__name__)}."
                )

        priors, valid = self._read_priors(anc.reshape(anchor_sets, num_priors, cfg.prior_size))

        return (
            loc.reshape(batch_size, num_priors, cfg.num_loc_classes, BOX_SIZE),
            conf.reshape(batch_size, num_priors, cfg.num_classes),
            priors,
            valid,
            var,
        )

    def _check_variances(self, variances: Optional[TensorLike], anchor_sets: int, num_priors: int) -> np.ndarray:
        """Return variances shaped (anchor_sets, P or 1, 1, 4)."""
        if self._config.variance_encoded_in_target or variances is None:
            return np.broadcast_to(_IDENTITY_VARIANCE, (anchor_sets, 1, 1, BOX_SIZE))

        var = np.asarray(variances, dtype=np.float32).ravel()
        if var.size == BOX_SIZE:
            return np.broadcast_to(var.reshape(1, 1, 1, BOX_SIZE), (anchor_sets, 1, 1, BOX_SIZE))
        if var.size == anchor_sets * num_priors * BOX_SIZE:
            return var.reshape(anchor_sets, num_priors, 1, BOX_SIZE)
        raise ShapeMismatch(
            f"Variances length {var.size} must be {BOX_SIZE} or "
            f"{anchor_sets * num_priors * BOX_SIZE}."
        )

    def _read_priors(self, rows: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Convert raw anchor rows into normalized corners and a validity mask.

        Args:
            rows: (anchor_sets, P, prior_size) raw anchor data.

        Returns:
            priors of shape (anchor_sets, P, 1, 4) and a boolean mask
            of shape (anchor_sets, P).
        """
        cfg = self._config
        valid = np.ones(rows.shape[:2], dtype=bool)

        if cfg.normalized:
            priors = rows.copy()
        else:
            # A batch index of -1 ends the proposal list for that image.
            for s in range(rows.shape[0]):
                ends = np.flatnonzero(rows[s, :, 0] == -1.0)
                if ends.size:
                    valid[s, ends[0]:] = False

            priors = rows[:, :, 1:].copy()
            # Pixel proposals use an inclusive far edge.
            # TODO: confirm against a Faster R-CNN reference run whether this shift belongs here.
            priors[:, :, 2:] += 1.0
            priors /= np.array(
                [cfg.input_width, cfg.input_height, cfg.input_width, cfg.input_height],
                dtype=np.float32,
            )

        return priors[:, :, None, :], valid

    def _decode_image(
        self,
        loc: np.ndarray,
        conf: np.ndarray,
        priors: np.ndarray,
        valid: np.ndarray,
        variances: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Run decode, per-class NMS and the final top-k for one image.

        Returns:
            (labels, scores, boxes) of the kept detections, best first.
        """
        cfg = self._config
        boxes = self._decode_boxes(priors, loc, variances).astype(np.float32, copy=False)
        if cfg.clip_boxes:
            boxes = np.clip(boxes, 0.0, 1.0)

        kept_anchors: List[np.ndarray] = []
        kept_labels: List[np.ndarray] = []

        for label in range(cfg.num_classes):
            if label == cfg.background_label_id:
                continue

            class_scores = conf[:, label]
            candidates = np.flatnonzero((class_scores > cfg.confidence_threshold) & valid)
            if candidates.size == 0:
                continue

            ranked = candidates[select_top_k(class_scores[candidates], cfg.top_k, candidates)]
            box_set = 0 if cfg.share_location else label
            keep = nms(boxes[ranked, box_set], cfg.nms_threshold, cfg.eta)

            kept_anchors.append(ranked[keep])
            kept_labels.append(np.full(keep.shape[0], label, dtype=np.int64))

        if not kept_anchors:
            return (
                np.empty((0,), dtype=np.int64),
                np.empty((0,), dtype=np.float32),
                np.empty((0, BOX_SIZE), dtype=np.float32),
            )

        anchors = np.concatenate(kept_anchors)
        labels = np.concatenate(kept_labels)
        scores = conf[anchors, labels]

        order = select_top_k(scores, cfg.keep_top_k, anchors, labels)
        anchors, labels, scores = anchors[order], labels[order], scores[order]
        box_sets = np.zeros_like(labels) if cfg.share_location else labels

        return labels, scores, boxes[anchors, box_sets]
