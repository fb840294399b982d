"""
Fixed-width time bucket arithmetic for click aggregation.

Buckets are half-open windows ``[start, start + width)`` expressed in epoch
milliseconds and aligned to the Unix epoch, so every process agrees on the
boundaries for a given width.
"""

from __future__ import annotations

from typing import List


def bucket_start_ms(timestamp_ms: int, bucket_ms: int) -> int:
    """Return the start of the bucket containing *timestamp_ms*."""
    if bucket_ms <= 0:
        raise ValueError("bucket width must be positive")
    return timestamp_ms - (timestamp_ms % bucket_ms)


def bucket_end_ms(start_ms: int, bucket_ms: int) -> int:
    """Return the exclusive end of the bucket starting at *start_ms*."""
    return start_ms + bucket_ms


def bucket_starts_between(start_ms: int, end_ms: int, bucket_ms: int) -> List[int]:
    """
    List every bucket start overlapping ``[start_ms, end_ms]``.

    Used to fill gaps when presenting persisted aggregates as a continuous
    series.
    """
    if end_ms < start_ms:
        return []
    current = bucket_start_ms(start_ms, bucket_ms)
    starts = []
    while current <= end_ms:
        starts.append(current)
        current += bucket_ms
    return starts
