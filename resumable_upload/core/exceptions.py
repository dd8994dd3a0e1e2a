"""
Error taxonomy for the upload engine.

Transient errors (TransientTransportError, ChecksumMismatch) are retried inside
the engine and never reach API callers. Everything else is terminal for the
current call and is surfaced with enough detail to decide whether to start a
fresh session.
"""
from typing import Optional


class UploadError(Exception):
    """Base class for all upload engine errors"""

    code = "UPLOAD_ERROR"
    retryable = False

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "session_id": self.session_id,
            "retryable": self.retryable,
        }


class TransientTransportError(UploadError):
    """Network blip or timeout while moving chunk bytes"""

    code = "TRANSIENT_TRANSPORT_ERROR"
    retryable = True


class ChecksumMismatch(TransientTransportError):
    """Chunk bytes did not match the expected digest"""

    code = "CHECKSUM_MISMATCH"

    def __init__(self, message: str, session_id: Optional[str] = None,
                 expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message, session_id)
        self.expected = expected
        self.actual = actual


class SessionNotFound(UploadError):
    """No session record exists; the caller must re-initialize"""

    code = "SESSION_NOT_FOUND"


class SessionNotResumable(SessionNotFound):
    """Session reached a terminal state and can no longer accept chunks"""

    code = "SESSION_NOT_RESUMABLE"

    def __init__(self, message: str, session_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message, session_id)
        self.status = status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status"] = self.status
        return data


class SessionExpired(UploadError):
    """Session passed its expiry; start a fresh session with the same metadata"""

    code = "SESSION_EXPIRED"


class ChunkBudgetExhausted(UploadError):
    """A chunk exceeded its retry budget and the session is now failed"""

    code = "CHUNK_BUDGET_EXHAUSTED"

    def __init__(self, message: str, session_id: Optional[str] = None, chunk_id: Optional[str] = None):
        super().__init__(message, session_id)
        self.chunk_id = chunk_id


class AssemblyError(UploadError):
    """Final object could not be written; retry assembly without re-uploading"""

    code = "ASSEMBLY_ERROR"
    retryable = True


class InvalidChunk(UploadError):
    """Chunk index or size does not fit the session layout"""

    code = "INVALID_CHUNK"


class InvalidSessionState(UploadError):
    """Requested transition is not allowed from the current status"""

    code = "INVALID_SESSION_STATE"


class FileIntegrityError(AssemblyError):
    """Assembled object does not match the whole-file hash given at initialization"""

    code = "FILE_INTEGRITY_ERROR"
    retryable = False
