"""
Error registry: loads and validates registry.yaml.

Besides the field checks, the registry enforces the two tags the error
handler acts on:

  payment_required  only on 402 entries (the client opens the top-up modal)
  expose_reason     only on non-5xx entries (the reason reaches the client)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

import yaml

from app.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

VALID_DOMAINS = {"API", "LED", "PAY"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
VALID_TAGS = {"payment_required", "expose_reason"}
REQUIRED_FIELDS = {"code", "domain", "title", "severity", "retryable", "user_action_required", "http_status", "safe_message", "remediation"}


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @property
    def payment_required(self) -> bool:
        return "payment_required" in self.tags

    @property
    def exposes_reason(self) -> bool:
        return "expose_reason" in self.tags


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _check_tags(code: str, http_status: int, tags: list) -> None:
    unknown = set(tags) - VALID_TAGS
    if unknown:
        raise RegistryValidationError(f"{code}: unknown tags {sorted(unknown)}")
    if "payment_required" in tags and http_status != 402:
        raise RegistryValidationError(
            f"{code}: payment_required needs http_status 402, got {http_status}"
        )
    if "expose_reason" in tags and http_status >= 500:
        raise RegistryValidationError(
            f"{code}: expose_reason is not allowed on a {http_status} entry"
        )


class ErrorRegistry:
    """Loads, validates, and provides lookup for error codes."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        if path is None:
            path = os.path.join(os.path.dirname(__file__), "registry.yaml")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        self.schema_version = data.get("schema_version", 0)
        errors_list = data.get("errors", [])

        if not isinstance(errors_list, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}

        for idx, raw in enumerate(errors_list):
            missing = REQUIRED_FIELDS - set(raw.keys())
            if missing:
                raise RegistryValidationError(
                    f"Entry {idx} ({raw.get('code', '?')}): missing fields {missing}"
                )

            code = raw["code"]
            if not CODE_PATTERN.match(code):
                raise RegistryValidationError(f"Invalid code format: {code!r}")
            if code in entries:
                raise RegistryValidationError(f"Duplicate code: {code}")

            domain = raw["domain"]
            if domain != code.split("-")[1]:
                raise RegistryValidationError(f"{code}: domain {domain!r} doesn't match code prefix")
            if domain not in VALID_DOMAINS:
                raise RegistryValidationError(f"{code}: unknown domain {domain!r}")

            if raw["severity"] not in VALID_SEVERITIES:
                raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

            http_status = int(raw["http_status"])
            if not 400 <= http_status <= 599:
                raise RegistryValidationError(f"{code}: http_status {http_status} is not an error status")

            tags = list(raw.get("tags") or [])
            _check_tags(code, http_status, tags)

            entries[code] = ErrorEntry(
                code=code,
                domain=domain,
                title=raw["title"],
                severity=raw["severity"],
                retryable=bool(raw["retryable"]),
                user_action_required=bool(raw["user_action_required"]),
                http_status=http_status,
                safe_message=raw["safe_message"],
                remediation=list(raw.get("remediation") or []),
                tags=tags,
            )

        self._entries = entries
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def all_codes(self) -> list[str]:
        return list(self._entries.keys())


# Module-level singleton, loaded once at startup
error_registry = ErrorRegistry()
