"""Logging, request log and provider statistics."""

from .logger import StructuredLogger
from .request_log import RequestLog
from .statistics import ProviderStatistics, StatisticsRepository

__all__ = ["ProviderStatistics", "RequestLog", "StatisticsRepository", "StructuredLogger"]
