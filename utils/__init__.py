"""Utilities for the confidential submission pipeline."""

from .utils import (
    setup_logging,
    PerformanceMonitor,
    create_performance_report,
    bytes_to_hex,
    hex_to_bytes,
    compute_hash,
    shorten,
    format_duration,
    HEX_PREFIX,
)

__all__ = [
    'setup_logging',
    'PerformanceMonitor',
    'create_performance_report',
    'bytes_to_hex',
    'hex_to_bytes',
    'compute_hash',
    'shorten',
    'format_duration',
    'HEX_PREFIX',
]
