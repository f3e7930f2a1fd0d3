"""Error taxonomy for the chat core.

Every error carries the HTTP status it maps to and a short machine-readable
``reason`` so clients can tell rejections apart without parsing messages.
"""


class ChatError(Exception):
    status_code = 500
    code = "internal"

    def __init__(self, message: str = "", reason: str = None):
        super().__init__(message or self.code)
        self.reason = reason or self.code

    @property
    def detail(self) -> str:
        return str(self)


class NotFound(ChatError):
    status_code = 404
    code = "not-found"


class Forbidden(ChatError):
    status_code = 403
    code = "forbidden"


class InvalidOperation(ChatError):
    status_code = 400
    code = "invalid-operation"


class ValidationFailed(ChatError):
    status_code = 422
    code = "validation"


class AttachmentRejected(ValidationFailed):
    """Attachment failed client/server side vetting before upload."""


class UploadFailed(ChatError):
    status_code = 502
    code = "upload-failed"


class RateLimited(ChatError):
    status_code = 429
    code = "rate-limited"


class Unauthorized(ChatError):
    status_code = 401
    code = "unauthorized"
