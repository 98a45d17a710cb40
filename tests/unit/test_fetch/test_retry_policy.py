"""Unit tests for retry policy decisions."""

import pytest
from pydantic import ValidationError

from taxaharvest.fetch.models import ApiRequest, ApiResponse, RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy model."""

    def test_default_values(self) -> None:
        """Test default retry policy values."""
        policy = RetryPolicy()

        assert policy.max_attempts == 5
        assert policy.initial_delay_seconds == 2.0
        assert policy.max_delay_seconds == 60.0

    def test_policy_is_frozen(self) -> None:
        """Policies cannot be mutated after construction."""
        policy = RetryPolicy()

        with pytest.raises(ValidationError):
            policy.max_attempts = 3  # type: ignore[misc]

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status: int) -> None:
        """Timeouts, throttling and server errors are retryable."""
        assert RetryPolicy().is_retryable_status(status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 501])
    def test_permanent_statuses(self, status: int) -> None:
        """Other non-2xx statuses are permanent."""
        assert RetryPolicy().is_retryable_status(status) is False

    def test_attempt_ceiling(self) -> None:
        """Attempts stop at the ceiling."""
        policy = RetryPolicy(max_attempts=3)

        assert policy.has_attempts_left(1) is True
        assert policy.has_attempts_left(2) is True
        assert policy.has_attempts_left(3) is False

    def test_next_delay_doubles_and_caps(self) -> None:
        """Delay doubles up to the maximum."""
        policy = RetryPolicy(initial_delay_seconds=2.0, max_delay_seconds=10.0)

        assert policy.next_delay(2.0) == 4.0
        assert policy.next_delay(4.0) == 8.0
        assert policy.next_delay(8.0) == 10.0
        assert policy.next_delay(10.0) == 10.0


class TestApiRequest:
    """Tests for the request description."""

    def test_target_without_params(self) -> None:
        """Target is the bare URL when there are no params."""
        request = ApiRequest(url="https://api.example.org/taxa/1")

        assert request.target == "https://api.example.org/taxa/1"

    def test_target_with_params(self) -> None:
        """Target appends params as a query string."""
        request = ApiRequest(
            url="https://api.example.org/search",
            params={"q": "lion", "limit": "5"},
        )

        assert request.target == "https://api.example.org/search?q=lion&limit=5"

    def test_empty_url_rejected(self) -> None:
        """A request needs a URL."""
        with pytest.raises(ValidationError):
            ApiRequest(url="")


class TestApiResponse:
    """Tests for the response model."""

    def test_text_and_size(self) -> None:
        """Body is exposed as text and byte size."""
        response = ApiResponse(
            url="https://api.example.org/",
            status_code=200,
            body="Felidé".encode(),
        )

        assert response.text == "Felidé"
        assert response.body_size == 7

    def test_non_2xx_rejected(self) -> None:
        """Only successful responses can be represented."""
        with pytest.raises(ValidationError):
            ApiResponse(url="https://api.example.org/", status_code=404)
