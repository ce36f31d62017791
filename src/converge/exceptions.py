__all__ = [
    'ConfigError',
    'ConflictError',
    'Error',
    'ExpiredError',
    'FatalError',
    'LeadershipLost',
    'MetricsUnavailable',
    'NotFoundError',
    'ObjectNotFound',
    'PermanentError',
    'QuotaExceededError',
    'Requeue',
    'StoreError',
    'StoreKeyError',
    'TemporaryError',
    'TransientStoreError',
    'ValidationError',
    'iterate_errors',
]


def iterate_errors(exc):
    """
    iterate over all non-exceptiongroup parts of an exception(group)
    """
    if isinstance(exc, BaseExceptionGroup):
        for e in exc.exceptions:
            yield from iterate_errors(e)
    else:
        yield exc


class FatalError(Exception):
    """A fatal error that we can not recover from."""


class Error(Exception):
    """Base class for all custom Exceptions."""

    def __init__(self, message=None):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.__repr__()

    def __repr__(self):
        return f'{self.__class__.__name__}: {self.message}'


class ConfigError(Error):
    """Invalid configuration."""


class StoreError(Error):
    """Base class for errors returned by an object store."""

    def __init__(self, message=None, key=None):
        super().__init__(message)
        self.key = key

    def __repr__(self):
        if self.key is not None:
            return f'{self.__class__.__name__}: {self.key}: {self.message}'
        return f'{self.__class__.__name__}: {self.message}'


class TransientStoreError(StoreError):
    """Network or server side failure. Retried with backoff."""


class ExpiredError(TransientStoreError):
    """The requested watch resume point is no longer available."""


class ConflictError(StoreError):
    """The expected resourceVersion is stale or the object already exists.
    Never retried blindly, the key is reconciled again instead."""


class ValidationError(StoreError):
    """The spec of an object is structurally invalid.
    Terminal until the spec changes."""


class NotFoundError(StoreError):
    """The object does not exist (anymore)."""


# Name kept for the cache facing API.
ObjectNotFound = NotFoundError


class QuotaExceededError(StoreError):
    """Creating the object would exceed a resource quota."""


class StoreKeyError(Error):
    pass


class LeadershipLost(Error):
    """Raised when acting on the store without holding the leader lease."""


class MetricsUnavailable(Error):
    """A metric source could not deliver samples."""


class TemporaryError(Error):
    """Raised by a reconcile function when a recoverable error occurs.
    The request will be requeued after the given delay."""

    def __init__(self, message=None, delay=10):
        super().__init__(message)
        self.delay = delay

    def __repr__(self):
        return f'{self.__class__.__name__}: {self.message} delay: {self.delay}'


class PermanentError(Error):
    """Raised by a reconcile function when a non-recoverably error occurs."""


class Requeue(Error):
    """Raised by a reconcile function to requeue a request.
    The request will be requeued after the given delay."""

    def __init__(self, after=None):
        super().__init__(None)
        self.after = after

    def __repr__(self):
        return f'{self.__class__.__name__}: after: {self.after}'
