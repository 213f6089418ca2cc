# Copyright (c) Syntropy Systems
"""Pydantic models describing configuration cases."""

from __future__ import annotations

from enum import Enum

from pydantic import Field, field_validator

from .base import FrozenModel, JSONValue


class CaseKind(str, Enum):
    """Which side of the connection a case mutates."""

    SERVER_EXPORT = "server-export"
    CLIENT_MOUNT = "client-mount"
    PROTOCOL_ALTERNATIVE = "protocol-alternative"


# Log family used when a case does not name one
_DEFAULT_FAMILIES: dict[CaseKind, str] = {
    CaseKind.SERVER_EXPORT: "NFS",
    CaseKind.CLIENT_MOUNT: "MOUNT",
}

# Alternatives whose tier differs from their variant name
_VARIANT_TIERS: dict[str, str] = {
    "sysctl": "direct-nfs",
}


class ConfigurationCase(FrozenModel):
    """One named configuration to apply, probe and revert.

    ``parameters`` is an ordered mapping of option name to JSON value; its
    meaning depends on ``kind`` and, for protocol alternatives, ``variant``.
    """

    name: str
    kind: CaseKind
    parameters: dict[str, JSONValue] = Field(default_factory=dict)
    variant: str | None = None
    family: str | None = None
    tier: str | None = None
    expected_paths: tuple[str, ...] | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value.strip():
            msg = "case name must not be empty"
            raise ValueError(msg)
        if ":" in value or "\n" in value or "\r" in value:
            msg = f"case name {value!r} must not contain ':' or a newline"
            raise ValueError(msg)
        return value

    @field_validator("family")
    @classmethod
    def _check_family(cls, value: str | None) -> str | None:
        if value is not None and (":" in value or "\n" in value):
            msg = f"family {value!r} must not contain ':' or a newline"
            raise ValueError(msg)
        return value

    @field_validator("expected_paths")
    @classmethod
    def _check_expected_paths(cls, value: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if value is None:
            return value
        if not value:
            msg = "expected_paths must list at least one path when set"
            raise ValueError(msg)
        if len(set(value)) != len(value):
            msg = "expected_paths must be unique"
            raise ValueError(msg)
        return value

    @property
    def log_family(self) -> str:
        """Family tag written in the outcome log."""
        if self.family:
            return self.family
        if self.kind in _DEFAULT_FAMILIES:
            return _DEFAULT_FAMILIES[self.kind]
        return (self.variant or "ALT").upper()

    @property
    def tier_name(self) -> str:
        """Recommendation tier this case competes in."""
        if self.tier:
            return self.tier
        if self.kind is CaseKind.PROTOCOL_ALTERNATIVE and self.variant:
            return _VARIANT_TIERS.get(self.variant, self.variant)
        return "direct-nfs"

    def param(self, key: str, default: JSONValue = None) -> JSONValue:
        """Return a parameter value or the provided default."""
        return self.parameters.get(key, default)

    def str_param(self, key: str, default: str = "") -> str:
        """Return a parameter as a string, treating null as the default."""
        value = self.parameters.get(key)
        if value is None:
            return default
        return str(value)
