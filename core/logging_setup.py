# core/logging_setup.py
"""
Logging configuration shared by the web process and the delivery worker

Handlers are attached to the root logger so every module logger
(``logging.getLogger(__name__)``) and Celery task logger ends up in the same
place.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict

LOG_FORMAT = '%(asctime)s %(name)-28s %(levelname)-8s [%(threadName)s] %(message)s'
DETAILED_FORMAT = '%(asctime)s %(name)-28s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_HANDLER_MARKER = '_newsletter_handler'


def configure_logging(config: Dict[str, Any], debug: bool = False) -> logging.Logger:
    """
    Configure the root logger once per process

    - stderr stream handler at ``LOG_LEVEL``
    - rotating file handler when ``LOG_FILE`` is set
    - third-party chatter reduced to warnings unless debugging
    """
    log_level = getattr(logging, str(config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Re-running (app factory in tests) must not stack duplicate handlers
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_MARKER, False)]:
        root.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    stream_handler.setLevel(log_level)
    setattr(stream_handler, _HANDLER_MARKER, True)
    root.addHandler(stream_handler)

    log_file = config.get('LOG_FILE')
    if log_file:
        Path(log_file).parent.mkdir(exist_ok=True, parents=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(fmt=DETAILED_FORMAT, datefmt=DATE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        setattr(file_handler, _HANDLER_MARKER, True)
        root.addHandler(file_handler)

    if not debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('aiosmtplib').setLevel(logging.WARNING)
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    return root
