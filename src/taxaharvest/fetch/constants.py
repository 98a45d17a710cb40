"""HTTP constants for the fetch layer.

Centralizes status codes and retry limits shared by every provider client.
"""

# HTTP Status Code Ranges
HTTP_STATUS_OK_MIN = 200
HTTP_STATUS_OK_MAX = 300
HTTP_STATUS_NOT_FOUND = 404
HTTP_STATUS_REQUEST_TIMEOUT = 408
HTTP_STATUS_TOO_MANY_REQUESTS = 429
HTTP_STATUS_INTERNAL_SERVER_ERROR = 500
HTTP_STATUS_BAD_GATEWAY = 502
HTTP_STATUS_SERVICE_UNAVAILABLE = 503
HTTP_STATUS_GATEWAY_TIMEOUT = 504

# Statuses worth another attempt; everything else non-2xx is permanent
RETRYABLE_STATUS_CODES = frozenset(
    {
        HTTP_STATUS_TOO_MANY_REQUESTS,
        HTTP_STATUS_REQUEST_TIMEOUT,
        HTTP_STATUS_BAD_GATEWAY,
        HTTP_STATUS_SERVICE_UNAVAILABLE,
        HTTP_STATUS_GATEWAY_TIMEOUT,
        HTTP_STATUS_INTERNAL_SERVER_ERROR,
    }
)

# Statuses that mean the backend gave up on an oversized unit of work
TIMEOUT_STATUS_CODES = frozenset(
    {HTTP_STATUS_REQUEST_TIMEOUT, HTTP_STATUS_GATEWAY_TIMEOUT}
)

# Attempt ceiling for one logical request
MAX_ATTEMPTS = 5

# Ceiling for server-directed waits (seconds)
MAX_RETRY_AFTER_SECONDS = 15 * 60

# Poll interval while waiting on the concurrency semaphore (seconds)
SEMAPHORE_POLL_SECONDS = 0.25

# Error bodies are truncated before being stored or logged
MAX_ERROR_BODY_CHARS = 2000
