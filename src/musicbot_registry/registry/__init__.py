"""
In-process MusicBot Instance Registry

This package provides:
1. InstanceRegistry: lock-guarded store of instances per client IP
2. RegistryClient: HTTP client for registering and listing instances
3. start_registry_server: launches the HTTP API in a daemon thread
"""

from .instance_registry import (
    Instance,
    InstanceRegistry,
    RegistryClient,
    RegistryError,
    RegistryFullError,
    ValidationError,
    create_registry_server,
    resolve_client_ip,
    start_registry_server,
)

__all__ = [
    'Instance',
    'InstanceRegistry',
    'RegistryClient',
    'RegistryError',
    'RegistryFullError',
    'ValidationError',
    'create_registry_server',
    'resolve_client_ip',
    'start_registry_server',
]
