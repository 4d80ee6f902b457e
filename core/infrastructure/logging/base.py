import logging
import sys
from functools import lru_cache

from loguru import logger

from config.base import get_settings

from .context import log_context
from .format import CustomLogFormat

DEVELOPMENT_ENVIRONMENTS = {"dev", "development", "local", "test"}


class InterceptHandler(logging.Handler):
    """Intercept standard Python logging records and redirect them to Loguru.

    Ensures that logs from third-party libraries (uvicorn, SQLAlchemy, httpx)
    go through the same sinks and carry the same context as application logs.
    """

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record by re-routing it to Loguru.

        Parameters
        ----------
        record: logging.LogRecord
            `LogRecord` instance from the standard logging library.
        """
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def _context_patcher(record) -> None:
    record["extra"].update(log_context.get({}))


@lru_cache(maxsize=1)
def setup_logging() -> None:
    """Configure Loguru to handle application logging with multiple sinks.

    Sets up console logging (stdout), a rotating JSON file and a separate
    error file. Standard logging is intercepted and every record is enriched
    with the active logging context (request id, tenant, scheduler cadence).
    """
    settings = get_settings()
    settings.logs_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()

    logging.root.handlers = [InterceptHandler()]
    logging.root.setLevel(settings.logging_level)

    for name in logging.root.manager.loggerDict.keys():
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    is_development_server = settings.environment.lower() in DEVELOPMENT_ENVIRONMENTS

    def console_filter(record) -> bool:
        return (
            "changes detected" not in record["message"]
            and record["function"] != "callHandlers"
        )

    handlers_config = [
        {
            "backtrace": False,
            "colorize": is_development_server,
            "diagnose": is_development_server,
            "filter": console_filter,
            "format": lambda record: CustomLogFormat(
                record=record
            ).log_console_format(),
            "level": settings.logging_level,
            "serialize": not is_development_server,
            "sink": sys.stdout,
        },
        {
            "backtrace": True,
            "colorize": False,
            "compression": "zip",
            "diagnose": False,
            "enqueue": True,
            "filter": console_filter,
            "format": lambda record: CustomLogFormat(record=record).log_file_format(),
            "level": "INFO",
            "retention": "10 days",
            "rotation": "10 MB",
            "serialize": True,
            "sink": settings.log_file,
        },
        {
            "backtrace": True,
            "colorize": False,
            "compression": "zip",
            "diagnose": False,
            "enqueue": True,
            "format": lambda record: CustomLogFormat(record=record).log_file_format(),
            "level": "ERROR",
            "retention": "60 days",
            "rotation": "10 MB",
            "serialize": True,
            "sink": str(settings.log_file).replace(".log", "_errors.log"),
        },
    ]

    logger.configure(handlers=handlers_config, patcher=_context_patcher)
