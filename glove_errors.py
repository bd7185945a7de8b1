class GloveError(Exception):
    pass


class TransportUnavailable(GloveError):
    """The requested transport capability is not present on this host."""


class TransportDenied(GloveError):
    """The user or host refused access to the transport."""


class TransportOpenFailed(GloveError):
    pass


class NotConnected(GloveError):
    pass


class WriteFailed(GloveError):
    pass


class AlreadyConnecting(GloveError):
    pass


class AlreadyConnected(GloveError):
    pass


class InvalidTransition(GloveError):
    pass


class PersistenceFailed(GloveError):
    pass


# Backend failures reported by the AI client
class ServiceUnavailable(GloveError):
    pass


class BadRequest(GloveError):
    pass


SERVICE_UNAVAILABLE = "service_unavailable"
BAD_REQUEST = "bad_request"


class _AIFailure(GloveError):
    def __init__(self, message, reason=SERVICE_UNAVAILABLE):
        super().__init__(message)
        self.reason = reason

    @classmethod
    def wrap(cls, exc):
        reason = BAD_REQUEST if isinstance(exc, BadRequest) else SERVICE_UNAVAILABLE
        return cls(str(exc), reason=reason)


class TranslationFailed(_AIFailure):
    pass


class SummarizationFailed(_AIFailure):
    pass
