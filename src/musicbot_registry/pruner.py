"""Background expiry of stale registry entries."""

import logging
import threading
from typing import Optional

from .registry import InstanceRegistry

logger = logging.getLogger(__name__)


def run_pruner(
    registry: InstanceRegistry,
    interval: float = 60,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Prune expired instances every *interval* seconds until *stop_event* is set."""
    stop_event = stop_event or threading.Event()
    while not stop_event.wait(interval):
        removed = registry.prune_expired()
        if removed:
            logger.info("Pruned %d expired instance(s)", removed)


def start_pruner(
    registry: InstanceRegistry,
    interval: float = 60,
) -> tuple[threading.Thread, threading.Event]:
    """Run the pruner in a daemon thread; set the returned event to stop it."""
    stop_event = threading.Event()
    thread = threading.Thread(
        target=run_pruner, args=(registry, interval, stop_event), daemon=True,
    )
    thread.start()
    return thread, stop_event
