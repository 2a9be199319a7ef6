"""Tests for core.types module."""

from core.types import ErrorCategory


class TestErrorCategory:
    def test_values(self):
        assert ErrorCategory.TRANSIENT.value == "transient"
        assert ErrorCategory.PERMANENT.value == "permanent"
        assert ErrorCategory.UNKNOWN.value == "unknown"

    def test_all_members(self):
        expected = {"TRANSIENT", "PERMANENT", "UNKNOWN"}
        assert set(ErrorCategory.__members__.keys()) == expected

    def test_from_value(self):
        assert ErrorCategory("transient") is ErrorCategory.TRANSIENT
