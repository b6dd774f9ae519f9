import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None):
    """Configure the root logger once: stderr, plus a file when LOG_FILE is set."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, str(log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # websockets is chatty at DEBUG; keep frame dumps out of our logs
    logging.getLogger('websockets').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
