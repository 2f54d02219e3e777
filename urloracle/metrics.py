# FILE: urloracle/metrics.py
# Prometheus metrics for url-oracle.
#
# Each CLI invocation is a short one-shot process, so nothing is served over
# HTTP. Metrics live in a process-local registry and can be written once at
# exit to a node-exporter textfile collector directory.
#
# Label sets are small and closed:
#   - outcome: "ok" or the failed build step
#   - status:  "found" / "not_found" / "error" for chain lookups
#   - check/status for verification checks

from __future__ import annotations

import logging
import os
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, write_to_textfile

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry(auto_describe=True)

BUILDS = Counter(
    "url_oracle_builds_total",
    "Attestation builds by outcome",
    ["outcome"],
    registry=REGISTRY,
)
CHAIN_LOOKUPS = Counter(
    "url_oracle_chain_lookups_total",
    "Previous-attestation lookups by status",
    ["status"],
    registry=REGISTRY,
)
VERIFY_CHECKS = Counter(
    "url_oracle_verification_checks_total",
    "Verification checks by name and status",
    ["check", "status"],
    registry=REGISTRY,
)
FETCH_SECONDS = Histogram(
    "url_oracle_fetch_seconds",
    "Content fetch latency (s)",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)


def write_textfile(path: Optional[str]) -> None:
    """Write the registry to `path` (no-op when path is empty)."""
    if not path:
        return
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    write_to_textfile(path, REGISTRY)
    logger.debug("metrics written to %s", path)


__all__ = [
    "REGISTRY",
    "BUILDS",
    "CHAIN_LOOKUPS",
    "VERIFY_CHECKS",
    "FETCH_SECONDS",
    "write_textfile",
]
