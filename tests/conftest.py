# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Pytest configuration and shared fixtures."""

import asyncio
import secrets
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from gateway_certs.ca_client import ConsulCAClient
from gateway_certs.config import clear_settings_cache
from gateway_certs.errors import PersistenceError
from gateway_certs.models import CARoot, LeafCert
from gateway_certs.sink import CertSink

ROOTS_PATH = "/v1/agent/connect/ca/roots"


def random_string() -> str:
    return secrets.token_hex(16)


class FakeConsul:
    """In-memory Consul agent CA endpoint.

    Fails the first ``leaf_failures``/``root_failures`` requests of each kind
    with a 500, and hands out ``expirations`` leaf certificates that expire
    immediately before switching to 10 minute certificates.
    """

    def __init__(
        self,
        service: str,
        leaf_failures: int = 0,
        root_failures: int = 0,
        expirations: int = 0,
        active: bool = True,
    ):
        self.service = service
        self.leaf_failures = leaf_failures
        self.root_failures = root_failures
        self.expirations = expirations
        self.active = active

        self.root_cert_pem = random_string()
        self.client_cert_pem = random_string()
        self.client_private_key_pem = random_string()

        self.root_requests = 0
        self.leaf_requests = 0
        self.requests: list[httpx.Request] = []

        self.client = ConsulCAClient(
            "http://consul.test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        leaf_path = f"/v1/agent/connect/ca/leaf/{self.service}"

        if request.method == "GET" and request.url.path == leaf_path:
            self.leaf_requests += 1
            if self.expirations == 0:
                expiration = datetime.now(timezone.utc) + timedelta(minutes=10)
            else:
                expiration = datetime.now(timezone.utc)
                self.expirations -= 1
            if self.leaf_failures > 0:
                self.leaf_failures -= 1
                return httpx.Response(500)
            return httpx.Response(
                200,
                json={
                    "SerialNumber": "1a:2b:3c",
                    "CertPEM": self.client_cert_pem,
                    "PrivateKeyPEM": self.client_private_key_pem,
                    "Service": self.service,
                    "ValidBefore": expiration.isoformat(),
                },
            )

        if request.method == "GET" and request.url.path == ROOTS_PATH:
            self.root_requests += 1
            if self.root_failures > 0:
                self.root_failures -= 1
                return httpx.Response(500)
            return httpx.Response(
                200,
                json={
                    "ActiveRootID": "root-1",
                    "TrustDomain": "11111111-2222-3333-4444-555555555555.consul",
                    "Roots": [
                        {"ID": "root-1", "RootCert": self.root_cert_pem, "Active": self.active},
                    ],
                },
            )

        return httpx.Response(500)


class RecordingSink(CertSink):
    """Sink that checks what it receives and counts writes."""

    def __init__(self, server: FakeConsul, target_writes: int = 1, fail_first: int = 0):
        self.server = server
        self.target_writes = target_writes
        self.fail_first = fail_first
        self.calls = 0
        self.writes = 0
        self.ready_during_write: list[bool] = []
        self.manager = None
        self.reached = asyncio.Event()

    async def write(self, root: CARoot, leaf: LeafCert) -> None:
        self.calls += 1
        if self.manager is not None:
            self.ready_during_write.append(self.manager.written)
        if self.calls <= self.fail_first:
            raise PersistenceError("disk full")

        assert root.root_cert_pem == self.server.root_cert_pem
        assert leaf.cert_pem == self.server.client_cert_pem
        assert leaf.private_key_pem == self.server.client_private_key_pem

        self.writes += 1
        if self.writes >= self.target_writes:
            self.reached.set()


@pytest.fixture(autouse=True)
def reset_settings():
    """Reset settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def make_server():
    """Factory for fake Consul CA servers."""

    def _make(service: str = "svc-a", **kwargs) -> FakeConsul:
        return FakeConsul(service, **kwargs)

    return _make


@pytest.fixture
def make_sink():
    """Factory for recording sinks bound to a fake server."""

    def _make(server: FakeConsul, **kwargs) -> RecordingSink:
        return RecordingSink(server, **kwargs)

    return _make
