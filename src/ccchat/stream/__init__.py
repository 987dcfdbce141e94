"""Streaming pipeline: framing and classification of assistant output.

The reconciler lives in ``ccchat.stream.reconciler``; it depends on the
history models and is imported from there directly.
"""

from ccchat.stream.classifier import (
    classify,
    extract_content,
    extract_final_content,
    format_cost,
    format_duration,
    parse_record,
)
from ccchat.stream.events import ContentUnit, Event, StreamUpdate
from ccchat.stream.framer import LineFramer, frame_records

__all__ = [
    "ContentUnit",
    "Event",
    "LineFramer",
    "StreamUpdate",
    "classify",
    "extract_content",
    "extract_final_content",
    "format_cost",
    "format_duration",
    "frame_records",
    "parse_record",
]
