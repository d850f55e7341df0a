"""Profiler support: CPU topology grouping, binary discovery, protobuf encoding and stack trace deduplication."""

__version__ = "0.1.0"