"""Honest broker de-identification: surrogate generation, crosswalk and lookup routing."""

from .config import BrokerConfig, BrokerType, IdType, NamingScheme, RegistryConfig
from .errors import HonestBrokerError
from .registry import BrokerRegistry, BrokerSummary
from .store import CrosswalkStore

__all__ = [
    "BrokerConfig",
    "BrokerRegistry",
    "BrokerSummary",
    "BrokerType",
    "CrosswalkStore",
    "HonestBrokerError",
    "IdType",
    "NamingScheme",
    "RegistryConfig",
]
