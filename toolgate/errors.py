"""
Error taxonomy for routing and tool execution.

Public seams never raise: failures are reported as tagged results whose `error_kind`
is one of the constants below. The exception classes exist for handler code that is
easier to write with early exits (privileged operations, datastore calls); the
dispatch layer converts them into tagged results.
"""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal["classification", "validation", "authorization", "execution", "transport"]

CLASSIFICATION_FAILURE: ErrorKind = "classification"
VALIDATION_REJECTION: ErrorKind = "validation"
AUTHORIZATION_FAILURE: ErrorKind = "authorization"
EXECUTION_FAILURE: ErrorKind = "execution"
TRANSPORT_FAILURE: ErrorKind = "transport"


class ToolgateError(Exception):
    kind: ErrorKind = EXECUTION_FAILURE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationRejection(ToolgateError):
    kind: ErrorKind = VALIDATION_REJECTION


class AuthorizationFailure(ToolgateError):
    kind: ErrorKind = AUTHORIZATION_FAILURE


class ExecutionFailure(ToolgateError):
    kind: ErrorKind = EXECUTION_FAILURE


class TransportFailure(ToolgateError):
    kind: ErrorKind = TRANSPORT_FAILURE
