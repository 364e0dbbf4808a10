"""Observability helpers for CTMS."""

from ctms.observability.metrics import metrics

__all__ = ["metrics"]
