"""
Utility functions for the inference gateway.
"""

import math
import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO"):
    """Route loguru output to stderr with the gateway format."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)


def estimate_tokens(text: str, chars_per_token: float = 3.5) -> int:
    """Rough token estimate; 3.5 chars/token suits medical text better than 4."""
    if not text:
        return 0
    return int(math.ceil(len(text) / chars_per_token))


def format_duration(seconds: float) -> str:
    """Format seconds into human readable."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        return f"{seconds/60:.1f}m"


def truncate(text: str, max_chars: int = 500) -> str:
    """Truncate with ellipsis."""
    return text[:max_chars] + "..." if len(text) > max_chars else text
