"""Client-side credential coordination for Tessera sessions."""
from tessera_client.channel import AuthEvent, AuthEventKind, BroadcastChannel, LocalBroadcastHub
from tessera_client.config import ClientSettings
from tessera_client.coordinator import CoordinatorState, CredentialCoordinator
from tessera_client.errors import (
    CallAborted,
    Conflict,
    CoordinatorError,
    NetworkFailure,
    SessionEnded,
    SessionExpired,
    Unauthorized,
)
from tessera_client.storage import CredentialStorage, JsonFileStorage, MemoryStorage, StoredCredentials

__all__ = [
    "AuthEvent",
    "AuthEventKind",
    "BroadcastChannel",
    "CallAborted",
    "ClientSettings",
    "Conflict",
    "CoordinatorError",
    "CoordinatorState",
    "CredentialCoordinator",
    "CredentialStorage",
    "JsonFileStorage",
    "LocalBroadcastHub",
    "MemoryStorage",
    "NetworkFailure",
    "SessionEnded",
    "SessionExpired",
    "StoredCredentials",
    "Unauthorized",
]
