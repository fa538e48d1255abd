from .backend import BackendClient, BackendError, InvalidBackendResponse  # noqa: F401
