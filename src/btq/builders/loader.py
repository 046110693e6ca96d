# src/btq/builders/loader.py
from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

from btq.domain.errors import ValidationError

from .base import Builder

if TYPE_CHECKING:
    from btq.config import Settings


def load_builder(target: str, settings: "Settings") -> Builder:
    """
    Resolves "package.module:attr" to a Builder.

    A class is instantiated through `from_settings(settings)` when it has one,
    otherwise with no arguments. Any other callable is used as-is.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValidationError(
            f"Builder must be given as 'package.module:attr', got {target!r}",
            details={"builder": target},
        )

    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError as e:
        raise ValidationError(
            f"Module {module_name!r} has no attribute {attr!r}",
            details={"builder": target},
        ) from e

    if isinstance(obj, type):
        factory = getattr(obj, "from_settings", None)
        obj = factory(settings) if callable(factory) else obj()

    if not callable(obj):
        raise ValidationError(f"Builder {target!r} is not callable", details={"builder": target})
    return obj
