"""Redaction helpers so credentials never reach the logs."""

import re


# Headers that must never appear in logs
SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "proxy-authorization",
        "x-api-key",
        "x-auth-token",
    }
)

# Query parameters that carry credentials on some APIs
SENSITIVE_PARAMS = frozenset({"token", "api_key", "apikey", "access_token"})

REDACTED_VALUE = "[REDACTED]"

_USERINFO_PATTERN = re.compile(r"(https?://)([^:/@]+):([^@]+)@")


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Redact sensitive headers for logging.

    Args:
        headers: Original headers dictionary.

    Returns:
        New dictionary with sensitive values replaced by [REDACTED].
    """
    return {
        key: REDACTED_VALUE if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def redact_params(params: dict[str, str]) -> dict[str, str]:
    """Redact credential-bearing query parameters.

    Args:
        params: Query parameters.

    Returns:
        New dictionary with sensitive values replaced by [REDACTED].
    """
    return {
        key: REDACTED_VALUE if key.lower() in SENSITIVE_PARAMS else value
        for key, value in params.items()
    }


def redact_url_credentials(url: str) -> str:
    """Redact user:password@ credentials embedded in a URL.

    Args:
        url: URL that may contain credentials.

    Returns:
        URL with credentials redacted.
    """
    return _USERINFO_PATTERN.sub(r"\1[REDACTED]:[REDACTED]@", url)
