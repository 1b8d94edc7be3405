"""Terminal status detection."""

from .detector import DetectedStatus, Detection, StatusDetector, detect_status, strip_ansi
from .patterns import DetectorPatterns, PatternLoadError, load_patterns

__all__ = [
    "DetectedStatus",
    "Detection",
    "DetectorPatterns",
    "PatternLoadError",
    "StatusDetector",
    "detect_status",
    "load_patterns",
    "strip_ansi",
]
