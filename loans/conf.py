from django.conf import settings

from .models import Frequency


def default_frequency() -> str:
    return getattr(settings, "LOANS_DEFAULT_FREQUENCY", Frequency.MONTHLY)


def sweep_interval_seconds() -> int:
    return int(getattr(settings, "LOANS_SWEEP_INTERVAL_SECONDS", 3600))


def import_max_rows() -> int:
    return int(getattr(settings, "LOANS_IMPORT_MAX_ROWS", 5000))
