#!/usr/bin/env python3
"""
Utility Tests
Hex helpers, formatting and performance monitoring
"""

import pytest

from utils.utils import (
    PerformanceMonitor,
    bytes_to_hex,
    compute_hash,
    create_performance_report,
    format_duration,
    hex_to_bytes,
    shorten,
)


class TestHexHelpers:

    def test_round_trip(self):
        assert bytes_to_hex(b"\x00\xff") == "0x00ff"
        assert hex_to_bytes("0x00ff") == b"\x00\xff"
        assert hex_to_bytes("0x") == b""

    @pytest.mark.parametrize("value", ["00ff", "0xf", "0xgg", None])
    def test_malformed(self, value):
        with pytest.raises(ValueError):
            hex_to_bytes(value)

    def test_shorten(self):
        assert shorten("0x1234") == "0x1234"
        assert shorten("0x" + "ab" * 20) == "0xabababab..."


class TestFormatting:

    def test_format_duration(self):
        assert format_duration(0.0125) == "12.5ms"
        assert format_duration(2.5) == "2.50s"
        assert format_duration(125) == "2m 5.0s"


class TestPerformanceMonitor:

    def test_summary_groups_operations(self):
        monitor = PerformanceMonitor()
        with monitor.start_operation("encrypting"):
            pass
        with monitor.start_operation("encrypting"):
            pass
        with pytest.raises(RuntimeError):
            with monitor.start_operation("submitting"):
                raise RuntimeError("ledger down")

        summary = monitor.get_summary()
        assert summary["total_operations"] == 3
        assert summary["operations"]["encrypting"]["count"] == 2
        assert summary["operations"]["submitting"]["failures"] == 1

        report = create_performance_report(monitor)
        assert "ENCRYPTING" in report
        assert "SUBMITTING" in report

    def test_empty_summary(self):
        monitor = PerformanceMonitor()
        assert monitor.get_summary()["total_operations"] == 0
        assert "No performance data available." in create_performance_report(monitor)
        monitor.reset()


class TestComputeHash:

    def test_containers_are_canonical(self):
        assert compute_hash({"a": 1, "b": 2}) == compute_hash({"b": 2, "a": 1})
        assert compute_hash("abc") == compute_hash(b"abc")
        assert compute_hash(b"abc").startswith("0x")
        assert len(compute_hash(b"abc")) == 66
