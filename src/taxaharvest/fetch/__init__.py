"""HTTP fetch layer with bounded concurrency, retries, and cancellation.

This module provides provider requests with:
- A counting semaphore held across all retries of one logical request
- Exponential backoff and Retry-After compliance
- Per-client request pacing
- Typed errors separating transport, retryable, and permanent failures
- Header redaction and metrics collection
"""

from taxaharvest.fetch.cancellation import CancellationToken
from taxaharvest.fetch.client import RetryClient
from taxaharvest.fetch.errors import (
    ApiError,
    IngestionCancelled,
    PermanentApiError,
    RetryableApiError,
    TransportError,
)
from taxaharvest.fetch.metrics import FetchMetrics
from taxaharvest.fetch.models import ApiRequest, ApiResponse, RetryPolicy


__all__ = [
    "ApiError",
    "ApiRequest",
    "ApiResponse",
    "CancellationToken",
    "FetchMetrics",
    "IngestionCancelled",
    "PermanentApiError",
    "RetryClient",
    "RetryPolicy",
    "RetryableApiError",
    "TransportError",
]
