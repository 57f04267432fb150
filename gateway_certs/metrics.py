# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Prometheus metrics for the certificate manager."""

from prometheus_client import Counter, Gauge

CERT_FETCH_FAILURES_TOTAL = Counter(
    "gateway_certs_fetch_failures_total",
    "Failed certificate manager steps",
    ["kind"],  # root, leaf, write
)

CERT_WRITES_TOTAL = Counter(
    "gateway_certs_writes_total",
    "Certificate bundles successfully persisted",
)

CERT_LEAF_VALID_BEFORE = Gauge(
    "gateway_certs_leaf_valid_before_timestamp_seconds",
    "Expiry of the most recently persisted leaf certificate (unix time)",
)

CERT_MANAGER_UP = Gauge(
    "gateway_certs_manager_up",
    "1 while the certificate management loop is running",
)
