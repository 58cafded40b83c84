"""Exception types raised across the evidence core"""
from typing import Optional


class EvidenceCoreError(Exception):
    """Base error with a machine code and a message fit for the user."""

    code = "UNKNOWN_ERROR"
    default_user_message = "An unexpected error occurred. Please try again."
    recoverable = False

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
        }


class HashingError(EvidenceCoreError):
    code = "CAPTURE_ERROR"
    default_user_message = "Could not compute the evidence hash. The capture was not saved."


class StorageError(EvidenceCoreError):
    code = "STORAGE_ERROR"
    default_user_message = "Unable to save files on this device. Please free up space and try again."


class OriginalWriteError(StorageError):
    default_user_message = "Could not store the original evidence file. The capture was not saved."


class CaptureError(EvidenceCoreError):
    code = "CAPTURE_ERROR"
    default_user_message = "Capture failed. Please try again."


class AuditLogError(EvidenceCoreError):
    code = "AUDIT_ERROR"
    default_user_message = "Could not record the chain of custody."


class StoreUnavailableError(EvidenceCoreError):
    code = "STORE_UNAVAILABLE"
    default_user_message = "Offline evidence storage is not available on this platform."


class SyncApiError(EvidenceCoreError):
    code = "NETWORK_ERROR"
    default_user_message = (
        "Unable to sync data. Your changes are saved locally and will sync when possible."
    )
    recoverable = True

    def __init__(self, message: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        """Network failures and server-side errors are worth retrying."""
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class ConflictDetected(SyncApiError):
    code = "SYNC_ERROR"
    default_user_message = "This report was changed on the server. Choose which version to keep."
    recoverable = False

    def __init__(self, message: str, server_updated_at=None, server_data: Optional[dict] = None):
        super().__init__(message, status_code=409)
        self.server_updated_at = server_updated_at
        self.server_data = server_data or {}


class ChunkedUploadInterrupted(SyncApiError):
    code = "SYNC_ERROR"

    def __init__(self, message: str, offset: int = 0, upload_url: Optional[str] = None):
        super().__init__(message)
        self.offset = offset
        self.upload_url = upload_url
