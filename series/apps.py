# series/apps.py
from django.apps import AppConfig


class SeriesConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "series"
    verbose_name = "Number series"

    def ready(self):
        """
        Register the domain event handlers of the series app.
        Import ONLY handler modules here.
        """
        from . import handlers  # noqa: F401
