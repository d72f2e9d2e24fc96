"""
logging_setup.py
~~~~~~~~~~~~~~~~

Logging configuration shared by the command line tool and the API server.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

NOISY_LOGGERS = [
    'socketio', 'engineio', 'engineio.server', 'socketio.server', 'werkzeug'
]


def configure_logging(level: Optional[str] = None) -> None:
    """
    Set up logging based on environment.

    - ``level`` (or the ``LOG_LEVEL`` variable, default INFO) sets the
      root level
    - In production (``FLASK_ENV=production``) third-party server logs are
      limited to warnings while our own logs stay at INFO
    """
    log_level_str = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    if is_production:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('nnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
