"""
AI Module

This module provides the external service client and its exceptions.
"""

from transync.ai.exceptions import (
    TranslationError,
    RateLimitError,
    QuotaExceededError,
    ServiceTimeoutError,
    ServiceError,
    PersistenceError,
    classify_failure,
)
from transync.ai.client import ServiceClient, EvaluationBatchResult, FillResponse, RefineRequest

__all__ = [
    'TranslationError',
    'RateLimitError',
    'QuotaExceededError',
    'ServiceTimeoutError',
    'ServiceError',
    'PersistenceError',
    'classify_failure',
    'ServiceClient',
    'EvaluationBatchResult',
    'FillResponse',
    'RefineRequest',
]
