# series/services/resolver.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union

from django.utils import dateformat, timezone

from series.conf import SUFFIX_MAX_LENGTH
from series.exceptions import InvalidTemplate

Moment = Union[datetime, date]


def _has_dangling_escape(template: str) -> bool:
    trailing = len(template) - len(template.rstrip("\\"))
    return trailing % 2 == 1


def resolve_suffix(template: str, at: Optional[Moment] = None) -> str:
    """
    Build the concrete series suffix for `template` at the moment `at`.

    The template uses the date format characters of Django's `date` filter
    (the PHP date() language). Literal characters are escaped with a
    backslash, so a template can mix words and tokens:

        resolve_suffix("-Y-m", datetime(2024, 3, 5))              -> "-2024-03"
        resolve_suffix(r"-Y-\\s\\t\\o\\r\\e", datetime(2024, 3, 5)) -> "-2024-store"

    Aware datetimes are converted to the current timezone first. When `at`
    is None the current time is used.
    """
    if not isinstance(template, str):
        raise InvalidTemplate(template, "template must be a string")

    if _has_dangling_escape(template):
        raise InvalidTemplate(template, "trailing escape character")

    if not template:
        return ""

    if at is None:
        at = timezone.now()

    if isinstance(at, datetime) and timezone.is_aware(at):
        at = timezone.localtime(at)

    try:
        suffix = dateformat.format(at, template)
    except (TypeError, ValueError, AttributeError) as exc:
        raise InvalidTemplate(template, str(exc)) from exc

    if len(suffix) > SUFFIX_MAX_LENGTH:
        raise InvalidTemplate(
            template,
            f"resolved suffix is longer than {SUFFIX_MAX_LENGTH} characters",
        )

    return suffix
