"""
Configuration management for the detection output decoder.

Provides a layered configuration system with the following precedence
(highest to lowest):

    Environment variables > YAML config file > Defaults

Design constraints:
    - The decoder MUST run with zero configuration (safe defaults only).
    - Missing or invalid values fail early and loudly.
    - No decoding logic or tensor handling belongs here.

Non-goals:
    - No dynamic reloading.
    - No per-call parameter overrides; a config is fixed for the
      lifetime of a decoder.
"""

import enum
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from detection_output.errors import ConfigurationError, ShapeMismatch

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Project root resolution
# ---------------------------------------------------------------------------
# Resolved relative to this file's location: detection_output/config.py → project/
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


# ---------------------------------------------------------------------------
# Configuration types
# ---------------------------------------------------------------------------

class CodeType(enum.Enum):
    """How localization offsets are applied to an anchor."""

    CORNER = "corner"
    CENTER_SIZE = "center_size"

    @classmethod
    def parse(cls, value) -> "CodeType":
        """Parse a code type from its enum, name, or Caffe parameter spelling.

        Accepts e.g. ``CodeType.CORNER``, ``"corner"``, ``"CENTER_SIZE"``
        and ``"caffe.PriorBoxParameter.CENTER_SIZE"``.
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().rsplit(".", 1)[-1].lower()
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(
                f"Invalid code_type: '{value}'. "
                f"Must be one of {[c.name for c in cls]}."
            ) from None


@dataclass(frozen=True)
class DecoderConfig:
    """Detection output parameters.

    Attributes:
        num_classes: Number of classes, background included.
        background_label_id: Class index that is never emitted.
        share_location: One box set shared by all classes (True) or one
                        box set per class (False).
        variance_encoded_in_target: Offsets were pre-scaled by the producer;
                                    external variances are ignored.
        code_type: Offset parameterization, CORNER or CENTER_SIZE.
        confidence_threshold: Scores must exceed this to become candidates.
        nms_threshold: IoU at or above which a lower-ranked box is suppressed.
        eta: Adaptive NMS decay; 1.0 disables adaptation.
        top_k: Maximum candidates per class entering NMS.
        keep_top_k: Maximum detections emitted per image.
        normalized: Anchors are in [0, 1] coordinates. When False they are
                    pixel boxes prefixed by a batch index.
        clip_boxes: Clamp decoded boxes to [0, 1].
        input_width: Network input width, used to normalize pixel anchors.
        input_height: Network input height, used to normalize pixel anchors.
        anchors_per_image: The anchor buffer holds one anchor set per image
                           instead of one set shared by the batch.
    """

    num_classes: int = 21
    background_label_id: int = 0
    share_location: bool = True
    variance_encoded_in_target: bool = False
    code_type: CodeType = CodeType.CENTER_SIZE
    confidence_threshold: float = 0.0
    nms_threshold: float = 0.3
    eta: float = 1.0
    top_k: int = 400
    keep_top_k: int = 200
    normalized: bool = True
    clip_boxes: bool = False
    input_width: int = 1
    input_height: int = 1
    anchors_per_image: bool = False

    @property
    def prior_size(self) -> int:
        """Floats per anchor row: 4 corners, plus a batch index in pixel mode."""
        return 4 if self.normalized else 5

    @property
    def num_loc_classes(self) -> int:
        """Number of box sets predicted per anchor."""
        return 1 if self.share_location else self.num_classes


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate(config: DecoderConfig) -> None:
    """Validate configuration values. Raises ConfigurationError on invalid state."""

    if not isinstance(config.code_type, CodeType):
        raise ConfigurationError(
            f"code_type must be a CodeType, got {config.code_type!r}."
        )

    if config.num_classes < 1:
        raise ConfigurationError(
            f"num_classes must be at least 1, got {config.num_classes}."
        )

    if not (0 <= config.background_label_id < config.num_classes):
        raise ConfigurationError(
            f"background_label_id must be in [0, {config.num_classes}), "
            f"got {config.background_label_id}."
        )

    if not (0.0 <= config.confidence_threshold <= 1.0):
        raise ConfigurationError(
            f"confidence_threshold must be in [0.0, 1.0], "
            f"got {config.confidence_threshold}."
        )

    if not (0.0 <= config.nms_threshold <= 1.0):
        raise ConfigurationError(
            f"nms_threshold must be in [0.0, 1.0], "
            f"got {config.nms_threshold}."
        )

    if not (0.0 < config.eta <= 1.0):
        raise ConfigurationError(
            f"eta must be in (0.0, 1.0], got {config.eta}."
        )

    if config.top_k <= 0:
        raise ConfigurationError(
            f"top_k must be positive, got {config.top_k}."
        )

    if config.keep_top_k <= 0:
        raise ConfigurationError(
            f"keep_top_k must be positive, got {config.keep_top_k}."
        )

    if config.input_width <= 0 or config.input_height <= 0:
        raise ConfigurationError(
            f"input_width and input_height must be positive, "
            f"got ({config.input_width}, {config.input_height})."
        )


# ---------------------------------------------------------------------------
# YAML / environment parsing
# ---------------------------------------------------------------------------

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def _parse_bool(value) -> bool:
    """Convert a YAML or environment value into a bool."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ConfigurationError(f"Expected a boolean value, got '{value}'.")


def _cast_field(name: str, value):
    if name == "code_type":
        return CodeType.parse(value)
    default = getattr(DecoderConfig, name)
    if isinstance(default, bool):
        return _parse_bool(value)
    if isinstance(default, int) and isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(
            f"Invalid value for {name}: '{value}' is not a whole number."
        )
    try:
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: '{value}' ({e}).") from None
    return value


def _build_decoder_config(raw: dict) -> DecoderConfig:
    """Build DecoderConfig from a raw YAML dict."""
    known = {f.name for f in fields(DecoderConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown detection_output key(s): {sorted(unknown)}. "
            f"Valid keys: {sorted(known)}."
        )
    kwargs = {name: _cast_field(name, value) for name, value in raw.items()}
    return DecoderConfig(**kwargs)


_ENV_PREFIX = "DETECTION_OUTPUT_"


def _apply_env_overrides(raw: dict) -> dict:
    """Apply environment variable overrides to the raw config dict.

    Environment variables follow the pattern:
        DETECTION_OUTPUT_NMS_THRESHOLD=0.45
        DETECTION_OUTPUT_CODE_TYPE=corner

    The variable suffix is the upper-cased DecoderConfig field name.
    """
    section = raw.get("detection_output") or {}
    if not isinstance(section, dict):
        raise ConfigurationError(
            f"detection_output must be a mapping, got {type(section).__name__}."
        )
    raw["detection_output"] = section
    for f in fields(DecoderConfig):
        env_var = f"{_ENV_PREFIX}{f.name.upper()}"
        value = os.environ.get(env_var)
        if value is not None:
            section[f.name] = value
            logger.debug("Config override from env: %s=%s", env_var, value)

    return raw


# ---------------------------------------------------------------------------
# Public loaders
# ---------------------------------------------------------------------------

def load_config(config_path: Optional[str] = None) -> DecoderConfig:
    """Load and validate decoder configuration.

    Precedence (highest → lowest):
        Environment variables > YAML file > Hard-coded defaults

    Args:
        config_path: Path to a YAML configuration file with a
                     ``detection_output`` section. If None, defaults
                     and environment overrides are used.

    Returns:
        A validated, frozen DecoderConfig instance.

    Raises:
        FileNotFoundError: If config_path is provided but does not exist.
        ConfigurationError: If any configuration value is invalid.
        yaml.YAMLError: If the YAML file is malformed.
    """
    raw: dict = {}

    # --- Layer 1: YAML file ---
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.is_absolute():
            resolved = _PROJECT_ROOT / resolved

        if not resolved.is_file():
            raise FileNotFoundError(
                f"Configuration file not found: {resolved}. "
                f"Provide a valid path or omit to use defaults."
            )

        logger.info("Loading config from: %s", resolved)
        with open(resolved, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"Configuration file must hold a mapping, got {type(raw).__name__}."
            )

    # --- Layer 2: Environment variable overrides ---
    raw = _apply_env_overrides(raw)

    config = _build_decoder_config(raw.get("detection_output") or {})
    validate(config)

    logger.debug("Configuration loaded: %s", config)
    return config


def faster_rcnn_config(
    anchors_length: int,
    localization_length: int,
    input_width: int,
    input_height: int,
    normalized: bool = False,
) -> DecoderConfig:
    """Build the decoder parameters used to append detection output to Faster R-CNN.

    Faster R-CNN emits per-class box offsets (``bbox_pred``), class
    probabilities (``cls_prob``) and proposals (``rois``) instead of a
    finished detection tensor. The number of classes is not known up
    front, so it is guessed from the flattened tensor lengths.

    Args:
        anchors_length: Total number of floats in the proposals tensor.
        localization_length: Total number of floats in the offsets tensor.
        input_width: Network input width in pixels.
        input_height: Network input height in pixels.
        normalized: Whether proposals are already in [0, 1] coordinates.

    Raises:
        ShapeMismatch: If the tensor lengths do not describe whole anchors
                       with a whole number of per-class boxes.
    """
    prior_size = 4 if normalized else 5
    if anchors_length <= 0 or anchors_length % prior_size != 0:
        raise ShapeMismatch(
            f"Proposals tensor length {anchors_length} is not a positive "
            f"multiple of the prior size {prior_size}."
        )
    num_priors = anchors_length // prior_size

    if localization_length % (num_priors * 4) != 0:
        raise ShapeMismatch(
            "Can't guess number of classes: localization tensor length "
            f"{localization_length} is not a multiple of {num_priors * 4}."
        )
    num_classes = localization_length // (num_priors * 4)
    logger.info("num_classes guessed: %d", num_classes)

    config = DecoderConfig(
        num_classes=num_classes,
        background_label_id=0,
        share_location=False,
        variance_encoded_in_target=True,
        code_type=CodeType.CENTER_SIZE,
        nms_threshold=0.3,
        eta=1.0,
        top_k=400,
        keep_top_k=200,
        normalized=normalized,
        input_width=input_width,
        input_height=input_height,
    )
    validate(config)
    return config
