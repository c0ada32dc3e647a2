import logging
import sys
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(process)x:%(thread)x %(name)s:%(funcName)s:%(lineno)d %(message)s"


def setup_logging(debug: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Configure the root logger.

    Without --debug or --log-file only warnings reach stderr. --debug lowers
    the level to DEBUG, --log-file redirects records to a file.
    """
    level = logging.DEBUG if debug or log_file else logging.WARNING
    if log_file is not None:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # botocore logs every credential lookup at DEBUG
    logging.getLogger("botocore").setLevel(max(level, logging.INFO))
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))
