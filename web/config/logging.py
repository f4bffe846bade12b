"""Logging configuration shared by Django and gunicorn.

Every record goes to stdout as one JSON object carrying the request id.
"""


def build_logging_config(level: str = "INFO") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
        },
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "filters": ["request_id"],
            },
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {
            "orders": {"level": level, "propagate": True},
            "django.request": {"level": "WARNING", "propagate": True},
        },
    }
