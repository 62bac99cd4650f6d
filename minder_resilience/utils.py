"""Provides utility functions and custom exceptions for the application.

This module contains common helpers and the error taxonomy shared by the
offline mutation queue and the upload pipeline.

Classes:
    MinderError: Base class for every error raised by this package.
    NetworkFailure: A transient transport failure (connection reset, DNS, ...).
    TimeoutFailure: A network call that exceeded its configured timeout.
    ServerRejection: The remote answered with an HTTP status >= 400.
    QueueFull: The mutation queue had to evict its oldest entry.
    MaxRetriesExceeded: An upload failed on every permitted attempt.
    TransferCancelled: An upload was cancelled through its controller.
    InvalidTransition: An upload transfer was moved to an illegal state.
    ImageProcessingError: An image could not be decoded or re-encoded.

Functions:
    format_bytes: Renders a byte count in a human readable form.
    generate_id: Produces a unique identifier with an optional prefix.
"""
import math
import time
import uuid
from typing import Optional


class MinderError(Exception):
    """Base class for all errors raised by the resilience layer.

    Attributes:
        code (str): A short machine readable error code.
    """
    code = "MINDER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class NetworkFailure(MinderError):
    """Raised when a network call fails before a response is received."""
    code = "NETWORK_ERROR"


class TimeoutFailure(NetworkFailure):
    """Raised when a network call exceeds its timeout.

    Timeouts are treated as ordinary transient failures for retry accounting.
    """
    code = "TIMEOUT"


class ServerRejection(MinderError):
    """Raised when the remote answers with an HTTP error status.

    Attributes:
        status_code (int): The HTTP status returned by the server.
    """
    code = "SERVER_REJECTION"

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class QueueFull(MinderError):
    """Signals that the mutation queue reached capacity.

    The queue never raises this to callers of `enqueue`; it is used to label
    the eviction in logs.
    """
    code = "QUEUE_FULL"


class MaxRetriesExceeded(MinderError):
    """Raised when an upload failed on every attempt its retry policy allowed.

    Attributes:
        attempts (int): How many attempts were made in total.
        last_error (Exception): The failure of the final attempt.
    """
    code = "MAX_RETRIES_EXCEEDED"

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"Giving up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class TransferCancelled(MinderError):
    """Raised when an upload is cancelled. Never retried."""
    code = "CANCELLED"


class InvalidTransition(MinderError, ValueError):
    """Raised when a transfer is moved to a state its state machine forbids."""
    code = "INVALID_TRANSITION"


class ImageProcessingError(MinderError):
    """Raised when an image cannot be decoded or re-encoded."""
    code = "IMAGE_PROCESSING_ERROR"


def format_bytes(num_bytes: int) -> str:
    """Formats a byte count into a human readable string (e.g. '1.5 MB')."""
    if num_bytes <= 0:
        return "0 Bytes"
    units = ['Bytes', 'KB', 'MB', 'GB', 'TB']
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1)
    value = round(num_bytes / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def generate_id(prefix: str = "") -> str:
    """Returns a unique id, optionally prefixed (e.g. 'photo.jpg-2048-<hex>')."""
    unique = uuid.uuid4().hex
    return f"{prefix}-{unique}" if prefix else unique


def now_ms() -> int:
    """Wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)
