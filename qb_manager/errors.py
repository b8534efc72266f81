"""
Exceptions raised by the qBittorrent session client and the cache store.

- QBError: Base exception for everything raised by this package
- AuthError: Credentials rejected or a session could not be established
- SessionExpired: The remote answered 401/403 for an authenticated request
- ActionFailure: The remote refused a mutation
- InstanceGone: A cache write referenced an instance that no longer exists
"""


class QBError(Exception):
    """Base exception for qBittorrent manager errors."""
    pass


class AuthError(QBError):
    """Raised when login fails or a request is denied after re-login."""
    pass


class SessionExpired(QBError):
    """Raised when the remote rejects the current session cookie."""
    pass


class ActionFailure(QBError):
    """Raised when the remote answers a mutation with a failure."""
    pass


class InstanceGone(QBError):
    """Raised when the instance was deleted while its cache rows were being written."""

    def __init__(self, instance_id: int):
        super().__init__(f"Instance {instance_id} no longer exists")
        self.instance_id = instance_id
