"""
Error taxonomy for the EmotiBot Chat service.

Every failure the chat pipeline can hit maps to one of these types, and each
type maps to a single HTTP status at the API boundary.
"""


class ChatError(Exception):
    """Base class for all chat pipeline errors."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ChatError):
    """Input has the wrong shape or is out of range."""

    status_code = 400
    public_message = "Invalid request"


class ConfigurationError(ChatError):
    """A required credential or setting is missing."""

    status_code = 500
    public_message = "AI service is not properly configured"


class ServiceError(ChatError):
    """The text-generation service reported a failure or could not be reached."""

    status_code = 503
    public_message = "Error communicating with AI service"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.upstream_status = upstream_status


class EmptyResponse(ChatError):
    """The service answered with a well-formed response that has no content."""

    status_code = 500
    public_message = "No response generated from AI model"


class MalformedResponse(ChatError):
    """The service answered with something that is not a completion."""

    status_code = 503
    public_message = "Unexpected response from AI service"


class SessionNotFoundError(ChatError):
    """No open session has this id."""

    status_code = 404
    public_message = "Session not found"


class SessionBusyError(ChatError):
    """A submission is already in flight for this session."""

    status_code = 409
    public_message = "A message is already being processed"


class SessionClosedError(ChatError):
    """The session has been torn down."""

    status_code = 409
    public_message = "Session is closed"


class StoreError(Exception):
    """The persistence backend failed to read or write."""


class PersistenceWarning(Warning):
    """Best-effort persistence failed; the in-memory conversation continues."""
