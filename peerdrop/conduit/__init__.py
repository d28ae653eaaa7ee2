"""Narrow interfaces to everything outside the transfer core

* persisting a completed file
* fire and forget notifications (UI / OS)
* progress reporting

Conduit: a natural or artificial channel through which something is conveyed,
the core only ever talks to the outside world through these.
"""

import logging

logger = logging.getLogger(__package__)

from peerdrop.conduit.abc import AbstractNotifier, AbstractPersister, AbstractProgressReporter  # noqa: E402
from peerdrop.conduit.notify import LogNotifier  # noqa: E402
from peerdrop.conduit.persist import DownloadsPersister, MemoryPersister  # noqa: E402
from peerdrop.conduit.progress import NullProgress, TqdmProgress  # noqa: E402

__all__ = (
    'AbstractNotifier',
    'AbstractPersister',
    'AbstractProgressReporter',
    'DownloadsPersister',
    'LogNotifier',
    'MemoryPersister',
    'NullProgress',
    'TqdmProgress',
)
