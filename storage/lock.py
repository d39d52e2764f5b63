"""
Advisory writer lock so only one run mutates a database file at a time.
"""

import fcntl
import logging
import os
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class WriterLockError(RuntimeError):
    pass


@contextmanager
def writer_lock(db_path: str) -> Iterator[str]:
    """Hold an exclusive, non-blocking flock on ``<db_path>.lock`` for the duration of the block."""
    lock_path = f"{db_path}.lock"
    directory = os.path.dirname(os.path.abspath(lock_path))
    os.makedirs(directory, exist_ok=True)
    fh = open(lock_path, 'w')
    try:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as ex:
            raise WriterLockError(f"another run holds {lock_path}") from ex
        fh.write(str(os.getpid()))
        fh.flush()
        logger.debug("acquired writer lock %s", lock_path)
        try:
            yield lock_path
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    finally:
        fh.close()
