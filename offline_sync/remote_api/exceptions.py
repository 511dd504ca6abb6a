# offline_sync/remote_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class SyncAPIError(Exception):
    """Base exception for remote store errors."""
    pass


class TransientRemoteError(SyncAPIError):
    """The call may succeed later; the operation stays queued."""
    pass


class PermanentRemoteError(SyncAPIError):
    """The call will never succeed as issued; the operation is dropped."""
    pass


class NetworkUnavailableError(TransientRemoteError):
    """Raised when the remote store cannot be reached at all."""
    pass


class APIConnectionError(TransientRemoteError):
    """Raised for other network issues (timeouts, broken connections)."""
    pass


class APIResponseError(SyncAPIError):
    """Raised for non-2xx responses or issues parsing the response."""
    def __init__(self, status_code: int, message: str, response_data: dict = None):
        super().__init__(f"API Error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}


class TransientAPIResponseError(APIResponseError, TransientRemoteError):
    """Server-side or throttling responses (408, 425, 429, 5xx)."""
    pass


class PermanentAPIResponseError(APIResponseError, PermanentRemoteError):
    """Rejected requests (other 4xx) and undecodable or invalid response bodies."""
    pass


class RemoteNotFoundError(PermanentAPIResponseError):
    """The addressed record does not exist remotely (404)."""
    pass


class AuthenticationError(PermanentAPIResponseError):
    """Raised for authentication failures (401, 403)."""
    pass


TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


def error_for_status(status_code: int, message: str, response_data: dict = None) -> APIResponseError:
    """Maps a non-2xx HTTP status to its classified exception."""
    if status_code in (401, 403):
        return AuthenticationError(status_code, f"Authentication failed: {message}", response_data)
    if status_code == 404:
        return RemoteNotFoundError(status_code, message, response_data)
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return TransientAPIResponseError(status_code, message, response_data)
    return PermanentAPIResponseError(status_code, message, response_data)

#
# End of offline_sync/remote_api/exceptions.py
########################################################################################################################
