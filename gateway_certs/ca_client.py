# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Certificate authority client.

The certificate manager talks to the CA only through ``CAClient``:

- ``fetch_roots()``: list root CAs and return the active one
- ``fetch_leaf(service)``: return a leaf certificate for a service identity

``ConsulCAClient`` implements both over the Consul agent HTTP API.
"""

from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from .config import Settings
from .errors import CARequestError
from .models import CARoot, CARootList, LeafCert

logger = structlog.get_logger(__name__)

ROOTS_PATH = "/v1/agent/connect/ca/roots"
LEAF_PATH = "/v1/agent/connect/ca/leaf/{service}"


class CAClient(ABC):
    """Abstract certificate authority client.

    Implementations:
    - ConsulCAClient: Consul agent Connect CA over HTTP
    """

    @abstractmethod
    async def fetch_roots(self) -> CARoot:
        """
        Fetch the currently active root CA.

        Raises:
            CARequestError: Transport error or non-success response
            NoActiveRootError: No root is marked active
        """

    @abstractmethod
    async def fetch_leaf(self, service: str) -> LeafCert:
        """
        Fetch a leaf certificate for the given service.

        Raises:
            CARequestError: Transport error or non-success response
        """


class ConsulCAClient(CAClient):
    """Consul agent Connect CA client."""

    def __init__(
        self,
        address: str,
        token: str | None = None,
        namespace: str | None = None,
        partition: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            address: Consul agent URL (e.g., http://127.0.0.1:8500)
            token: ACL token sent as X-Consul-Token
            namespace: Consul Enterprise namespace
            partition: Consul Enterprise admin partition
            timeout: Request timeout in seconds
            http_client: Pre-built client (ownership stays with the caller)
        """
        self.address = address.rstrip("/")
        self.token = token
        self.namespace = namespace
        self.partition = partition
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConsulCAClient":
        return cls(
            address=settings.consul_http_addr,
            token=settings.consul_http_token or None,
            namespace=settings.consul_namespace,
            partition=settings.consul_partition,
            timeout=settings.consul_timeout_seconds,
        )

    async def __aenter__(self) -> "ConsulCAClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

    async def fetch_roots(self) -> CARoot:
        data = await self._get(ROOTS_PATH)
        try:
            roots = CARootList.model_validate(data)
        except ValidationError as e:
            raise CARequestError(f"invalid root list: {e}", path=ROOTS_PATH) from e
        return roots.active_root()

    async def fetch_leaf(self, service: str) -> LeafCert:
        path = LEAF_PATH.format(service=quote(service, safe=""))
        data = await self._get(path)
        try:
            return LeafCert.model_validate(data)
        except ValidationError as e:
            raise CARequestError(f"invalid leaf certificate: {e}", path=path) from e

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["X-Consul-Token"] = self.token
        return headers

    def _params(self) -> dict[str, str]:
        params = {}
        if self.namespace:
            params["ns"] = self.namespace
        if self.partition:
            params["partition"] = self.partition
        return params

    async def _get(self, path: str) -> Any:
        url = f"{self.address}{path}"
        try:
            response = await self._http_client.get(
                url, headers=self._headers(), params=self._params()
            )
        except httpx.RequestError as e:
            raise CARequestError(f"request to {path} failed: {e}", path=path) from e

        if not response.is_success:
            logger.debug(
                "ca_request_failed",
                path=path,
                status_code=response.status_code,
                response=response.text[:500],
            )
            raise CARequestError(
                f"unexpected response code {response.status_code} from {path}",
                path=path,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise CARequestError(f"invalid JSON from {path}: {e}", path=path) from e
