import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(component)s] %(message)s"
LOGGER_PREFIX = "marker_tracking"


class ComponentNameFilter(logging.Filter):
    """Stamps the pipeline component name onto every record."""

    def __init__(self, component: str):
        super().__init__()
        self.component = component

    def filter(self, record: logging.LogRecord) -> bool:
        record.component = self.component
        return True


def _attach(logger: logging.Logger, handler: logging.Handler, component: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ComponentNameFilter(component))
    logger.addHandler(handler)
    return handler


def setup_logger(component: str, level: int = logging.INFO) -> logging.Logger:
    """Console logger ``marker_tracking.<component>``; repeated calls reuse it."""
    logger = logging.getLogger(f"{LOGGER_PREFIX}.{component}")
    logger.setLevel(level)
    if not logger.handlers:
        _attach(logger, logging.StreamHandler(), component)
        logger.propagate = False
    return logger


def component_logger(component: str, logger: Optional[logging.Logger] = None) -> logging.Logger:
    return logger if logger is not None else setup_logger(component)


def add_file_handler(logger: logging.Logger, component: str, log_path: str) -> logging.Handler:
    return _attach(logger, logging.FileHandler(log_path, encoding="utf-8"), component)
