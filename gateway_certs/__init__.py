# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""STOA Gateway Certificate Agent.

Fetches the mesh root CA and the gateway's leaf certificate from the
Consul Connect CA, keeps them renewed, and writes them to disk for the
proxy data plane.
"""

from .ca_client import CAClient, ConsulCAClient
from .errors import (
    CAClientError,
    CARequestError,
    CertManagerError,
    CertRetriesExhaustedError,
    CertWaitTimeoutError,
    FetchKind,
    NoActiveRootError,
    PersistenceError,
)
from .manager import CertManager, CertManagerOptions, ManagerState, next_renewal_delay
from .models import CARoot, CARootList, LeafCert
from .sink import (
    CLIENT_CERT_FILE,
    CLIENT_PRIVATE_KEY_FILE,
    ROOT_CA_FILE,
    CertSink,
    FileCertSink,
    read_bundle,
)

__version__ = "0.1.0"

__all__ = [
    "CAClient",
    "ConsulCAClient",
    "CAClientError",
    "CARequestError",
    "CertManagerError",
    "CertRetriesExhaustedError",
    "CertWaitTimeoutError",
    "FetchKind",
    "NoActiveRootError",
    "PersistenceError",
    "CertManager",
    "CertManagerOptions",
    "ManagerState",
    "next_renewal_delay",
    "CARoot",
    "CARootList",
    "LeafCert",
    "CertSink",
    "FileCertSink",
    "read_bundle",
    "ROOT_CA_FILE",
    "CLIENT_CERT_FILE",
    "CLIENT_PRIVATE_KEY_FILE",
]
