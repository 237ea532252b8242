"""
Error Types - Enums and exception classes for the sync core

Contains:
- ErrorType enum (standardized error types)
- Exception classes (MedSyncError and subclasses)
- USER_MESSAGES: human-readable text shown for each failure
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorType(Enum):
    """Standard error types"""
    # Input errors
    INVALID_PAIRING_CODE = "invalid_pairing_code"

    # Relay errors
    SESSION_NOT_FOUND = "session_not_found"
    PAIRING_CODE_IN_USE = "pairing_code_in_use"
    SESSION_ALREADY_ANSWERED = "session_already_answered"
    RELAY_UNAVAILABLE = "relay_unavailable"

    # Negotiation/transfer errors
    NEGOTIATION_FAILED = "negotiation_failed"
    TRANSFER_FAILED = "transfer_failed"
    PAYLOAD_INVALID = "payload_invalid"
    PAYLOAD_TOO_LARGE = "payload_too_large"

    # Generic
    INTERNAL_ERROR = "internal_error"


USER_MESSAGES: Dict[str, str] = {
    "invalid_code": "Invalid pairing code",
    "not_found": "Code not found or expired",
    "expired": "Code expired",
    "connection_failed": "Connection failed",
    "transfer_failed": "Transfer failed",
    "receive_failed": "Failed to receive data",
    "sender_start_failed": "Could not start the transfer",
    "receiver_start_failed": "Could not connect",
}


class MedSyncError(Exception):
    """Base exception for MedSync"""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_type = error_type
        self.details = details or {}
        super().__init__(self.message)


class InvalidPairingCodeError(MedSyncError):
    """Raised when a pairing code is malformed (rejected before any network call)"""

    def __init__(self, code: str):
        super().__init__(
            message=USER_MESSAGES["invalid_code"],
            error_type=ErrorType.INVALID_PAIRING_CODE,
            details={"code": code}
        )


class RelayError(MedSyncError):
    """Any failure talking to the session relay"""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.RELAY_UNAVAILABLE,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message=message, error_type=error_type, details=details)


class SessionNotFoundError(RelayError):
    """Session does not exist or has expired"""

    def __init__(self, key: str):
        super().__init__(
            message=f"Sync session not found: {key}",
            error_type=ErrorType.SESSION_NOT_FOUND,
            details={"key": key}
        )


class SessionAlreadyAnsweredError(RelayError):
    """A receiver already answered this session"""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Sync session already answered: {session_id}",
            error_type=ErrorType.SESSION_ALREADY_ANSWERED,
            details={"session_id": session_id}
        )


class NegotiationError(MedSyncError):
    """Peer connection could not be established"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_type=ErrorType.NEGOTIATION_FAILED,
            details=details
        )


class TransferError(MedSyncError):
    """Payload could not be sent or decoded"""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.TRANSFER_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message=message, error_type=error_type, details=details)
