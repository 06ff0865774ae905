class NotAuthenticated(Exception):
    """No valid session accompanies the request."""


class ValidationError(ValueError):
    """Input is malformed or references something the user does not own."""


class UpstreamError(Exception):
    """The bank aggregator failed, timed out or rejected the call."""


class StorageError(Exception):
    """The database rejected a write."""
