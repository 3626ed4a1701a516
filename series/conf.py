# series/conf.py
"""
Settings used by the series app, with their defaults.

All of them can be overridden in the project settings module:

    SERIES_DEFAULT_SUFFIX = "-Y-m"
    SERIES_LOCK_RETRIES = 5
    SERIES_LOCK_RETRY_DELAY = 0.05
"""
from django.conf import settings

DEFAULT_SUFFIX = r"-Y-\s\t\o\r\e"
DEFAULT_LOCK_RETRIES = 5
DEFAULT_LOCK_RETRY_DELAY = 0.05

SUFFIX_MAX_LENGTH = 255


def default_suffix() -> str:
    return getattr(settings, "SERIES_DEFAULT_SUFFIX", DEFAULT_SUFFIX)


def lock_retries() -> int:
    return max(1, int(getattr(settings, "SERIES_LOCK_RETRIES", DEFAULT_LOCK_RETRIES)))


def lock_retry_delay() -> float:
    return float(getattr(settings, "SERIES_LOCK_RETRY_DELAY", DEFAULT_LOCK_RETRY_DELAY))
