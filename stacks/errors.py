#!/usr/bin/env python3


class TopologyError(Exception):
    """Base class for errors raised while planning or rendering the stack."""


class ConfigurationError(TopologyError):
    """Raised when the stack configuration is incomplete or inconsistent."""


class PolicyLimitError(ConfigurationError):
    """Raised when an IAM role would exceed a platform policy size limit."""


class TopologyReferenceError(TopologyError):
    """Raised when a resource references something that was never built."""


class DiscoveryError(TopologyError):
    """Raised when published discovery values cannot be read back."""
