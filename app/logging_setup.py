import logging
import logging.config

from app.config import LOG_LEVEL

_configured = False


def setup_logging() -> logging.Logger:
    """Configure console logging once and return the application logger."""
    global _configured
    if not _configured:
        logging.config.dictConfig({
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": LOG_LEVEL,
                },
            },
            "loggers": {
                "app": {
                    "handlers": ["console"],
                    "level": LOG_LEVEL,
                    "propagate": True,
                },
            },
        })
        _configured = True
    return logging.getLogger("app")
