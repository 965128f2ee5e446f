"""
Logging configuration shared by services, the API and the scheduler script
"""
import logging
import os

_configured = False


def configure_logging(level: str = None) -> None:
    """Configure root logging once; later calls are ignored"""
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a module logger, configuring logging on first use"""
    configure_logging()
    return logging.getLogger(name)
