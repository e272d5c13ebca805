#!/usr/bin/env python3
import ipaddress
from dataclasses import dataclass
from typing import Any, Optional

from stacks.errors import ConfigurationError

# SSH is open to the world unless a range is configured
DEFAULT_SSH_RANGE = "0.0.0.0/0"

_TRUE_VALUES = ("true", "1", "yes")
_FALSE_VALUES = ("false", "0", "no", "")


def _parse_bool(key: str, value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Context value {key}={value!r} is not a boolean")


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class StackConfig:
    """Immutable input for the preprod Polis topology.

    Validation runs on construction so an invalid configuration never
    reaches the planner.
    """

    env_file: str
    enable_ssh_access: bool = False
    branch: Optional[str] = None
    ssh_allowed_ip_range: Optional[str] = None
    web_key_pair_name: Optional[str] = None
    math_worker_key_pair_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.env_file or not str(self.env_file).strip():
            raise ConfigurationError("envFile is required")

        if self.ssh_allowed_ip_range is not None:
            try:
                ipaddress.IPv4Network(self.ssh_allowed_ip_range)
            except ValueError as e:
                raise ConfigurationError(
                    f"sshAllowedIpRange {self.ssh_allowed_ip_range!r} is not a valid IPv4 CIDR: {e}"
                ) from e

        if not self.enable_ssh_access:
            named = [
                key
                for key, value in (
                    ("webKeyPairName", self.web_key_pair_name),
                    ("mathWorkerKeyPairName", self.math_worker_key_pair_name),
                )
                if value
            ]
            if named:
                raise ConfigurationError(
                    f"{', '.join(named)} given but enableSSHAccess is false"
                )

    @property
    def ssh_source(self) -> str:
        return self.ssh_allowed_ip_range or DEFAULT_SSH_RANGE

    @classmethod
    def from_context(cls, node) -> "StackConfig":
        """Read the configuration from CDK context (``-c key=value``)."""
        return cls(
            env_file=_optional_str(node.try_get_context("envFile")) or "",
            enable_ssh_access=_parse_bool(
                "enableSSHAccess", node.try_get_context("enableSSHAccess")
            ),
            branch=_optional_str(node.try_get_context("branch")),
            ssh_allowed_ip_range=_optional_str(node.try_get_context("sshAllowedIpRange")),
            web_key_pair_name=_optional_str(node.try_get_context("webKeyPairName")),
            math_worker_key_pair_name=_optional_str(
                node.try_get_context("mathWorkerKeyPairName")
            ),
        )
