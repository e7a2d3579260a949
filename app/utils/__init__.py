"""Utility modules for the meeting webhook pipeline."""

from app.utils.timestamps import format_offset, to_datetime, to_epoch_ms

__all__ = [
    "format_offset",
    "to_datetime",
    "to_epoch_ms",
]
