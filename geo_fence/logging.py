import logging.config
import logging.handlers
import os

FORMAT = '%(asctime)s [%(levelname)s] [%(name)s] %(message)s'

STREAMS = {
    '/dev/stdout': 'ext://sys.stdout',
    '/dev/stderr': 'ext://sys.stderr',
}

# third party loggers that are noisy below WARNING
QUIET_LOGGERS = ('asyncio', 'aiohttp', 'pyroute2')


class ErrorLogHandler(logging.handlers.RotatingFileHandler):
    """Rotating error log; missing parent directories are created on first write"""

    def __init__(self, filename: str, max_bytes: int = 1024 * 1024, backup_count: int = 3):
        super().__init__(filename, maxBytes=max_bytes, backupCount=backup_count, delay=True)

    def _open(self):
        os.makedirs(os.path.dirname(self.baseFilename), exist_ok=True)
        return super()._open()


def error_log_handler(filename: str, level: str = 'ERROR') -> dict:
    if filename == os.devnull:
        return {
            'class': 'logging.NullHandler',
            'level': level,
        }

    stream = STREAMS.get(filename.rstrip('/'))
    if stream is not None:
        return {
            'class': 'logging.StreamHandler',
            'stream': stream,
            'level': level,
            'formatter': 'verbose',
        }

    return {
        '()': ErrorLogHandler,
        'filename': filename,
        'level': level,
        'formatter': 'verbose',
    }


def build_logging_config(loglevel=logging.INFO, error_filename: str = None) -> dict:
    if error_filename is None:
        error_filename = os.devnull

    loggers = {
        '': {'handlers': ['console', 'error_file'], 'level': 'DEBUG', 'propagate': False},
        # pid library reports every lock attempt
        'PidFile': {'handlers': ['null'], 'propagate': False},
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {'level': 'WARNING'}

    # fmt: off
    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'verbose': {
                'format': FORMAT,
            },
        },
        'handlers': {
            'null': {
                'level': 'DEBUG',
                'class': 'logging.NullHandler',
            },
            'console': {
                'class': 'logging.StreamHandler',
                'stream': 'ext://sys.stdout',
                'level': loglevel,
                'formatter': 'verbose',
            },
            'error_file': error_log_handler(error_filename),
        },
        'loggers': loggers,
    }
    # fmt: on


def setup_logging(loglevel=logging.INFO, error_filename: str = None):
    logging.config.dictConfig(build_logging_config(loglevel, error_filename))
