import logging
import os
import sys
from logging.handlers import RotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s:%(lineno)d - %(pathname)s - %(message)s'


class Logger:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
            cls._instance._setup_logger()
        return cls._instance

    def _setup_logger(self):
        self.logger = logging.getLogger('SecureConnect')
        level_name = os.environ.get('SECURECONNECT_LOG_LEVEL', 'INFO').upper()
        self.logger.setLevel(getattr(logging, level_name, logging.INFO))

        log_dir = os.environ.get(
            'SECURECONNECT_LOG_DIR',
            os.path.join(os.path.expanduser('~'), '.secureconnect', 'logs'),
        )
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, 'secureconnect.log')

        # Use RotatingFileHandler to limit log file size
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024,
                                           backupCount=3)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

        self.logger.addHandler(file_handler)
        self._console_handler = None

    def get_logger(self):
        return self.logger

    def attach_console(self, level: int = logging.INFO) -> None:
        """Mirror log records to stderr, used by the command line client."""
        if self._console_handler is not None:
            return
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        self.logger.addHandler(handler)
        self._console_handler = handler


logger = Logger().get_logger()
