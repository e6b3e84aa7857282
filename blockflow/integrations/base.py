"""Shared errors for outbound provider integrations."""


class ExternalServiceError(Exception):
    """A provider call failed; the message is safe to show to the author."""

    def __init__(
        self,
        message: str,
        provider: str,
        error_code: str = "EXTERNAL_SERVICE_ERROR",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.error_code = error_code
        self.status_code = status_code


class InvalidApiKeyError(ExternalServiceError):
    """Provider rejected the API key. Never retried."""

    def __init__(self, provider: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Invalid {provider} API key. Please check your configuration.",
            provider,
            "INVALID_API_KEY",
            401,
        )


class RateLimitedError(ExternalServiceError):
    """Provider answered 429; retried with exponential backoff."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            provider,
            "PROVIDER_RATE_LIMITED",
            429,
        )
