"""
Exception taxonomy for the ESL bridge.

These are raised inside the components and converted at their boundaries:
the token manager returns None, the platform client returns a failed
PlatformResponse, the queue records the error on the item and the webhook
answers with an error-shaped body.
"""

# Platform response codes
CODE_OK = 200
CODE_TOKEN_INVALID = 14002
CODE_INTERNAL = 500


class BridgeError(Exception):
    """Base exception for ESL bridge errors."""


class ConfigurationError(BridgeError):
    """Raised when settings are missing or invalid."""


class AuthError(BridgeError):
    """Raised when the platform login or a stored credential is rejected."""


class TransientNetworkError(BridgeError):
    """Raised on transport failures and 5xx responses - these are retryable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class PlatformRejection(BridgeError):
    """Structured code/message returned by the platform."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def retryable(self) -> bool:
        """Only an invalid token is worth another attempt; other codes are final."""
        return self.code == CODE_TOKEN_INVALID

    def __str__(self) -> str:
        return f"{self.message} (code {self.code})"


class NotFoundLocally(BridgeError):
    """Raised when a webhook references a label with no local product."""

    def __init__(self, mac: str, goods_id: str | None = None):
        super().__init__(f"No product bound to ESL tag {mac}")
        self.mac = mac
        self.goods_id = goods_id


class DuplicateEvent(BridgeError):
    """Short-circuit outcome: the event was already recorded."""

    def __init__(self, existing_id: int):
        super().__init__(f"Request {existing_id} already exists in the dedup window")
        self.existing_id = existing_id
