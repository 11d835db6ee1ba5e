class StorefrontError(Exception):
    """Base error carrying an HTTP status and optional diagnostic details."""

    status_code = 500

    def __init__(self, message, details=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(StorefrontError):
    """A secret or credential needed at call time is missing."""
    status_code = 500


class AuthError(StorefrontError):
    status_code = 502


class ProviderUnavailable(StorefrontError):
    status_code = 502


class ProviderRejected(StorefrontError):
    status_code = 400


class InvalidInput(StorefrontError):
    """A request field is missing or malformed."""
    status_code = 400


class NotFound(StorefrontError):
    status_code = 404


class Conflict(StorefrontError):
    status_code = 409


class PanelUnavailable(ProviderUnavailable):
    pass


class PanelRejected(ProviderRejected):
    pass


class UsernameTaken(PanelRejected, Conflict):
    status_code = 409


class IllegalTransition(Conflict):
    pass


def to_envelope(exc, include_raw=False):
    if isinstance(exc, StorefrontError):
        message = exc.message
        details = dict(exc.details)
    else:
        message = str(exc) or exc.__class__.__name__
        details = {}
    if not include_raw:
        details.pop('raw_response', None)
    details.setdefault('kind', exc.__class__.__name__)
    return {"success": False, "error": message, "details": details}
