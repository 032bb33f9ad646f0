"""Credit-gated image text extraction."""

from datafromimage.extraction.gate import ExtractionGate, ExtractionResult, ImageInput
from datafromimage.extraction.vision import VisionError, VisionService

__all__ = [
    "ExtractionGate",
    "ExtractionResult",
    "ImageInput",
    "VisionError",
    "VisionService",
]
