"""Typed failures raised by the outbound provider clients.

Callers branch on the exception type (or ``retryable``), never on the
message text:

- TransientProviderError   — timeout, connection failure, 5xx, 429 or an
                             undecodable response. Safe to retry later.
- PermanentProviderError   — the provider rejected the request (bad
                             address, unknown variant...). Needs a human.
- ProviderUnavailableError — the circuit breaker refused the call. Nothing
                             was sent; the breaker does not count it.
"""


class ProviderError(Exception):
    retryable = True

    def __init__(self, message, provider=None, status_code=None, detail=None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.detail = detail


class TransientProviderError(ProviderError):
    retryable = True


class PermanentProviderError(ProviderError):
    retryable = False


class ProviderUnavailableError(ProviderError):
    retryable = True


class CircuitOpenError(ProviderUnavailableError):
    def __init__(self, name):
        super().__init__(f"circuit breaker '{name}' is open", provider=name)


class TooManyRequestsError(ProviderUnavailableError):
    def __init__(self, name):
        super().__init__(
            f"circuit breaker '{name}' is half-open: too many requests",
            provider=name,
        )
