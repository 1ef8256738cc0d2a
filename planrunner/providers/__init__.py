"""Capability providers — where tool invocations are actually carried out."""

from planrunner.providers.base import CapabilityProvider
from planrunner.providers.local import LocalVaultProvider

__all__ = ["CapabilityProvider", "LocalVaultProvider"]
