from typing import Optional


class RelayError(Exception):
    """Base error for the Relay execution core."""


# --- Definition errors (rejected before a run exists) ---

class DefinitionError(RelayError):
    pass


class ExpressionError(RelayError):
    pass


class UnresolvedReferenceError(ExpressionError):
    def __init__(self, namespace: str, path: tuple):
        self.namespace = namespace
        self.path = tuple(path)
        dotted = ".".join([namespace, *self.path])
        super().__init__(f"Unresolved reference: {dotted}")


# --- Launch errors (container never started) ---

class LaunchError(RelayError):
    IMAGE_PULL = "image_pull"
    RUNTIME_UNAVAILABLE = "runtime_unavailable"

    def __init__(self, message: str, kind: str = RUNTIME_UNAVAILABLE):
        super().__init__(message)
        self.kind = kind


# --- Metadata API errors (returned to the calling container) ---

class MetadataError(RelayError):
    status_code = 400


class UnauthorizedError(MetadataError):
    status_code = 401


class ForbiddenError(MetadataError):
    status_code = 403


class NotFoundError(MetadataError):
    status_code = 404


class MalformedWriteError(MetadataError):
    status_code = 422


# --- Delivery errors (surfaced to the webhook caller) ---

class DeliveryError(RelayError):
    def __init__(self, message: str, status_code: int = 502, body: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UnknownTokenError(DeliveryError):
    def __init__(self, message: str = "Unknown registration token"):
        super().__init__(message, status_code=404)
