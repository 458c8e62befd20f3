"""Adaptive SQM: learns per-hour WAN throughput and keeps gateway shaping rates honest."""

__version__ = "0.4.0"
