"""
Builder collaborators: the contract the worker pool calls, a mock builder and
dotted-path loading of a real one.
"""

from .base import Builder, ProgressSink, coerce_result
from .loader import load_builder
from .mock import MockBuilder

__all__ = ["Builder", "ProgressSink", "coerce_result", "load_builder", "MockBuilder"]
