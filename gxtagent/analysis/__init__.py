"""Analysis components: indicator formulas and swing structure detection."""

from .trend_detector import TrendDetector, SwingStructure

__all__ = ["TrendDetector", "SwingStructure"]
