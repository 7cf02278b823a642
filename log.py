import logging
import sys
from middleware import RequestIDMiddleware

LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(request_id)s] - %(name)s - %(message)s'

# Chatty at INFO, only their warnings are useful here
QUIET_LOGGERS = ("sqlalchemy.engine", "celery.app.trace", "kombu", "httpx")


class ContextualFilter(logging.Filter):
    """Stamps each record with the id of the request being served, or N/A outside one."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = RequestIDMiddleware.request_id_context().get()
        return True


def setup_logging(log_level: str = "INFO", log_filename: str = "ab_testing_service.log"):
    """Root logger to stdout and an append-only file, both carrying the request id."""
    request_filter = ContextualFilter()
    formatter = logging.Formatter(LOG_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_filename:
        handlers.append(logging.FileHandler(log_filename, mode='a'))

    for handler in handlers:
        handler.addFilter(request_filter)
        handler.setFormatter(formatter)

    logging.basicConfig(level=logging.getLevelName(log_level.upper()), handlers=handlers)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
