"""Custom exception hierarchy for the device coordinator."""


class CoordinatorError(Exception):
    """Base error."""
    def __init__(self, message: str, code: str = "COORDINATOR_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class AuthenticationError(CoordinatorError):
    """Malformed or missing device identity — connection refused."""
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="AUTH_ERROR")


class StoreUnavailableError(CoordinatorError):
    """Session store unreachable while degraded mode is disabled."""
    def __init__(self, message: str = "Session store unavailable"):
        super().__init__(message, code="STORE_UNAVAILABLE")


class ProviderError(CoordinatorError):
    """Conversation provider call failed or timed out. Always recoverable."""
    def __init__(self, message: str = "Conversation provider error"):
        super().__init__(message, code="PROVIDER_ERROR")


class ProtocolViolation(CoordinatorError):
    """Event not valid for the device's current session state."""
    def __init__(self, message: str = "Protocol violation", code: str = "PROTOCOL_VIOLATION"):
        super().__init__(message, code=code)


class SessionTimeoutError(CoordinatorError):
    """Session exceeded the inactivity ceiling and was force-terminated."""
    def __init__(self, message: str = "Session timed out"):
        super().__init__(message, code="SESSION_TIMEOUT")
