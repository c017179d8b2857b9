"""Formatting helpers, terminal colors and logging setup."""

from __future__ import annotations

import logging
import sys

from .config import Config

# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Args:
        size: Size in bytes

    Returns:
        Human-readable string (e.g., "1.23 MB")

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{int(size)} {unit}"
        size = size / 1024.0  # type: ignore
    return f"{size:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


# ============================================================================
# TERMINAL COLORS - For CLI output (auto-detects TTY)
# ============================================================================

class Colors:
    """
    ANSI color helpers for terminal output.

    Disabled on non-TTY streams (pipes, redirects) or when
    ``Config.USE_COLORS`` is False, so piped output stays clean.

    Example:
        >>> print(Colors.success("Operation completed"))
        [OK] Operation completed
    """
    _RESET = '\033[0m'
    _DIM = '\033[2m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        """Format text as info (blue with i)."""
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def dim(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._DIM}{text}{cls._RESET}"
        return text


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(verbose: int = 0, quiet: bool = False) -> None:
    """
    Configure the ``syncbox`` logger hierarchy for command-line use.

    Library modules only create loggers; handlers are installed here so that
    embedding programs keep control of their own logging setup.

    Args:
        verbose: 0 -> WARNING, 1 -> INFO, 2+ -> DEBUG
        quiet: Only report errors
    """
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1 or Config.VERBOSE_LOGGING:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger('syncbox').setLevel(level)
    # botocore is chatty at INFO/DEBUG; only surface its problems
    if level > logging.DEBUG:
        for name in ('boto3', 'botocore', 's3transfer', 'urllib3'):
            logging.getLogger(name).setLevel(logging.WARNING)
