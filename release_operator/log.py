"""
Structured logging helpers.

The core never reaches for a module-level logger: a FieldsAdapter is created
by the entry point and handed down through constructors and function
parameters, gaining context fields on the way.
"""

import logging
from typing import Any, Dict, Optional


class FieldsAdapter(logging.LoggerAdapter):
    """LoggerAdapter that renders its context as key=value pairs"""

    def __init__(self, logger: logging.Logger, fields: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(fields or {}))

    def process(self, msg, kwargs):
        if not self.extra:
            return msg, kwargs
        context = " ".join(f"{key}={value}" for key, value in self.extra.items())
        return f"{msg} [{context}]", kwargs

    def with_fields(self, **fields: Any) -> "FieldsAdapter":
        """Return a new adapter carrying the current fields plus the given ones"""
        merged = dict(self.extra)
        merged.update(fields)
        return FieldsAdapter(self.logger, merged)


def get_logger(name: str = "release_operator", **fields: Any) -> FieldsAdapter:
    return FieldsAdapter(logging.getLogger(name), fields)


def ensure_logger(logger: Optional[FieldsAdapter]) -> FieldsAdapter:
    """Fall back to a field-less handle when the caller passed none"""
    return logger if logger is not None else get_logger()


def setup_logging(verbosity: str = "info"):
    level = getattr(logging, verbosity.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {verbosity}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
