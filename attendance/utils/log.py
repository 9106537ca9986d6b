"""Logging setup."""

import logging
import os

from contextlib import contextmanager

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def get_logger(name):
    return logging.getLogger(name)


def set_verbosity(verbose: bool) -> None:
    """Switch the root logger between INFO and DEBUG (per-face match details)."""
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


@contextmanager
def suppress_fds(fds=(1, 2)):
    """Point the given OS-level file descriptors at /dev/null for the block.

    onnxruntime and dlib write banners straight to fd 1/2 from C code, past
    sys.stdout/sys.stderr.
    """
    devnull = os.open(os.devnull, os.O_WRONLY)
    saved = {fd: os.dup(fd) for fd in fds}
    try:
        for fd in fds:
            os.dup2(devnull, fd)
        yield
    finally:
        for fd, copy in saved.items():
            os.dup2(copy, fd)
            os.close(copy)
        os.close(devnull)
