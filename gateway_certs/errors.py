# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Error types for the gateway certificate agent.

Every failure the certificate manager can observe maps to one of these
classes. Transient errors (``CAClientError``, ``PersistenceError``) count
against the failure budget of their ``FetchKind``; ``CertRetriesExhaustedError``
is fatal and ends the management loop.
"""

from enum import Enum


class FetchKind(str, Enum):
    """Step of the management cycle a failure budget is tracked for."""

    ROOT = "root"
    LEAF = "leaf"
    WRITE = "write"

    @property
    def description(self) -> str:
        return {
            FetchKind.ROOT: "root CA fetch",
            FetchKind.LEAF: "leaf certificate fetch",
            FetchKind.WRITE: "certificate write",
        }[self]


class CertManagerError(Exception):
    """Base exception for certificate agent errors."""


class CAClientError(CertManagerError):
    """The certificate authority could not be queried."""


class CARequestError(CAClientError):
    """Transport failure or non-success response from the CA API."""

    def __init__(self, message: str, path: str = "", status_code: int | None = None):
        super().__init__(message)
        self.path = path
        self.status_code = status_code


class NoActiveRootError(CAClientError):
    """The CA returned a root list without an active root."""

    def __init__(self, message: str = "no active root CA certificate found"):
        super().__init__(message)


class PersistenceError(CertManagerError):
    """The certificate sink failed to write the bundle."""


class CertRetriesExhaustedError(CertManagerError):
    """A fetch kind failed ``attempts`` consecutive times."""

    def __init__(self, kind: FetchKind, attempts: int, last_error: BaseException | None = None):
        self.kind = kind
        self.attempts = attempts
        self.last_error = last_error
        message = f"{kind.description} failed {attempts} consecutive time(s)"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


class CertWaitTimeoutError(CertManagerError, TimeoutError):
    """Certificates were not written before the wait deadline."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s waiting for certificates to be written")
