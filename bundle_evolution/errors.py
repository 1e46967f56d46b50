"""Exceptions shared by the bundle generation and evolution modules."""

from __future__ import annotations


class AlgorithmAborted(RuntimeError):
    """Raised when a running computation notices its abort flag was set."""
