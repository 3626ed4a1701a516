from .fields import SeriesNumberField
from .sequences import SeriesCounter
from .mixins import SeriesNumberedModel

__all__ = [
    # Field
    "SeriesNumberField",
    # Lock rows
    "SeriesCounter",
    # Save hook
    "SeriesNumberedModel",
]
