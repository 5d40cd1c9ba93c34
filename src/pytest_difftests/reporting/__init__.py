"""Reporting module for pytest-difftests analysis results."""

from pytest_difftests.reporting.json_reporter import JsonReporter


__all__ = ['JsonReporter']
