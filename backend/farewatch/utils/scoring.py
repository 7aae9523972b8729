import logging
import math

logger = logging.getLogger(__name__)


def clamp_unit(value: float, label: str = "score") -> float:
    """Clamp a score to [0, 1]. NaN is treated as a defect and becomes 0."""
    if value is None or math.isnan(value):
        logger.warning(f"{label} was not a number; clamped to 0.0")
        return 0.0
    if value < 0.0 or value > 1.0:
        logger.debug(f"{label} {value:.4f} outside [0, 1]; clamped")
    return min(1.0, max(0.0, value))
