"""Error taxonomy shared by the storage layer and the HTTP surface."""


class WebhookInboxError(Exception):
    """Base class for errors raised by the webhook inbox."""


class ValidationError(WebhookInboxError):
    """Missing or malformed input."""


class SignatureInvalidError(WebhookInboxError):
    """Webhook signature did not match the configured secret."""


class NotFoundError(WebhookInboxError):
    def __init__(self, message_id: str):
        super().__init__(f"Webhook message not found: {message_id}")
        self.message_id = message_id


class BackendUnavailableError(WebhookInboxError):
    """A storage backend could not serve the request (connection, timeout, driver error)."""

    def __init__(self, backend: str, operation: str, reason: str = ""):
        message = f"{backend} backend unavailable during {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.backend = backend
        self.operation = operation


class ConflictError(WebhookInboxError):
    """Concurrent modification detected inside an adapter."""
