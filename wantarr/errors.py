class WantarrError(Exception):
    """Base exception for wantarr."""


class ExternalSourceError(WantarrError):
    """Raised when an external API (Trakt, Jellyfin, Discord, SMTP) fails or times out."""


class MalformedPayloadError(ExternalSourceError):
    """Raised when an external payload does not validate at the boundary."""


class TraktError(ExternalSourceError):
    """Raised when the Trakt API fails."""


class JellyfinError(ExternalSourceError):
    """Raised when the Jellyfin API fails."""


class UserAlreadyExistsError(JellyfinError):
    """Raised when a user name is already taken on the media server."""

    def __init__(self, username: str):
        super().__init__(f"User {username!r} already exists")
        self.username = username


class ChatError(ExternalSourceError):
    """Raised when the chat platform API fails."""


class InvalidTransitionError(WantarrError):
    """Raised when a request status change is not allowed by the state machine."""

    def __init__(self, old_status, new_status):
        super().__init__(f"Cannot move request from {old_status} to {new_status}")
        self.old_status = old_status
        self.new_status = new_status


class RequestNotFoundError(WantarrError):
    """Raised when a request id does not match any tracked request."""

    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} not found")
        self.request_id = request_id


class MailError(ExternalSourceError):
    """Raised when the SMTP server refuses or drops a message."""
