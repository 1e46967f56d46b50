"""Common base class shared by the stateful bundle-evolution components."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from bundle_evolution.errors import AlgorithmAborted


class AlgorithmComponent:
    """Provide a dedicated logger and cooperative abort checks."""

    def __init__(self) -> None:
        self.logger: logging.Logger = logging.getLogger(self.__class__.__name__)

    def check_abort(self, abort: Optional[threading.Event]) -> None:
        """Raise :class:`AlgorithmAborted` once ``abort`` has been set."""

        if abort is not None and abort.is_set():
            self.logger.warning("Abort requested; stopping %s", self.__class__.__name__)
            raise AlgorithmAborted(f"{self.__class__.__name__} aborted")
