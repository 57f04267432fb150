# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Certificate authority wire models.

Pydantic models for the Consul Connect agent CA API:
``/v1/agent/connect/ca/roots`` and ``/v1/agent/connect/ca/leaf/{service}``.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import NoActiveRootError


class _CAModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


# =============================================================================
# Root CA Models
# =============================================================================


class CARoot(_CAModel):
    """A root CA certificate known to the mesh."""

    id: str = Field(default="", alias="ID")
    name: str = Field(default="", alias="Name")
    root_cert_pem: str = Field(..., alias="RootCert")
    active: bool = Field(default=False, alias="Active")


class CARootList(_CAModel):
    """Response of the roots endpoint."""

    active_root_id: str = Field(default="", alias="ActiveRootID")
    trust_domain: str = Field(default="", alias="TrustDomain")
    roots: list[CARoot] = Field(default_factory=list, alias="Roots")

    def active_root(self) -> CARoot:
        """Return the root marked active.

        Raises:
            NoActiveRootError: No root in the list is marked active
        """
        active = [root for root in self.roots if root.active]
        if not active:
            raise NoActiveRootError()
        for root in active:
            if self.active_root_id and root.id == self.active_root_id:
                return root
        return active[0]


# =============================================================================
# Leaf Certificate Models
# =============================================================================


class LeafCert(_CAModel):
    """A leaf certificate and private key issued for a service identity."""

    serial_number: str = Field(default="", alias="SerialNumber")
    cert_pem: str = Field(..., alias="CertPEM")
    private_key_pem: str = Field(..., alias="PrivateKeyPEM")
    service: str = Field(default="", alias="Service")
    service_uri: str = Field(default="", alias="ServiceURI")
    valid_after: datetime | None = Field(default=None, alias="ValidAfter")
    valid_before: datetime = Field(..., alias="ValidBefore")

    @field_validator("valid_after", "valid_before")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def remaining(self, now: datetime | None = None) -> float:
        """Seconds until the certificate expires (negative once expired)."""
        now = now or datetime.now(timezone.utc)
        return (self.valid_before - now).total_seconds()

    def __repr__(self) -> str:
        """Safe repr - NEVER includes private key."""
        return (
            f"LeafCert(service={self.service!r}, "
            f"serial={self.serial_number!r}, "
            f"valid_before={self.valid_before.isoformat()})"
        )

    def __str__(self) -> str:
        return self.__repr__()
