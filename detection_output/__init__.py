"""
Detection Output — SSD-style detection post-processing on NumPy tensors.

Public API:
    - DetectionDecoder: Decodes localization, confidence and anchor
      tensors into a fixed-capacity detection tensor.
    - DecoderConfig / CodeType: Decoder parameters.
    - load_config / faster_rcnn_config: Build a validated DecoderConfig.
    - postprocess / Detection: Parse the detection tensor into objects.
    - ConfigurationError / ShapeMismatch: Error taxonomy.

Usage:
    from detection_output import DetectionDecoder, postprocess

    decoder = DetectionDecoder()
    output = decoder.decode(loc, conf, priors)
    detections = postprocess(output, image_sizes=[(640, 480)])
"""

from detection_output.config import CodeType, DecoderConfig, faster_rcnn_config, load_config
from detection_output.decoder import DetectionDecoder
from detection_output.detection import Detection
from detection_output.errors import ConfigurationError, ShapeMismatch
from detection_output.postprocessor import postprocess

__all__ = [
    "CodeType",
    "ConfigurationError",
    "DecoderConfig",
    "Detection",
    "DetectionDecoder",
    "ShapeMismatch",
    "faster_rcnn_config",
    "load_config",
    "postprocess",
]
