"""Shared helpers."""

from arrayde.utils.fileio import (
    atomic_write,
    atomic_write_frame,
    atomic_write_json,
    atomic_write_text,
)

__all__ = [
    'atomic_write',
    'atomic_write_frame',
    'atomic_write_json',
    'atomic_write_text',
]
