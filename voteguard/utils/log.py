"""Logging setup for the face authentication core"""

import logging
import os

from contextlib import contextmanager

ROOT_LOGGER = "voteguard"

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")


def get_logger(name):
    """Return a logger inside the ``voteguard`` hierarchy.

    Scripts running as ``__main__`` still log under the package root so one
    ``logging.getLogger("voteguard").setLevel(...)`` call silences everything.
    """
    if not name or name == "__main__":
        name = ROOT_LOGGER
    elif name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


@contextmanager
def suppress_fds(enabled: bool = True):
    """Point FD 1 and 2 at /dev/null while native model sessions are built.

    onnxruntime prints provider banners straight to the C-level streams,
    bypassing sys.stdout/sys.stderr. Pass ``enabled=False`` to keep them
    visible when debugging model loading.
    """
    if not enabled:
        yield
        return
    devnull = os.open(os.devnull, os.O_RDWR)
    saved = (os.dup(1), os.dup(2))
    try:
        os.dup2(devnull, 1)
        os.dup2(devnull, 2)
        yield
    finally:
        for fd, old in zip((1, 2), saved):
            os.dup2(old, fd)
            os.close(old)
        os.close(devnull)
