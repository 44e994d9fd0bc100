"""Exception types raised by the sync service."""


class MedSyncError(Exception):
    """Base class for all medication sync errors."""


class ConfigurationError(MedSyncError):
    """Invalid sync configuration (unknown policy, unknown frequency tier, ...)."""


class EntityNotConfiguredError(ConfigurationError):
    """No active sync job exists for the requested entity."""

    def __init__(self, entity_id: str, message: str | None = None):
        self.entity_id = entity_id
        super().__init__(message or f"No sync configuration found for entity '{entity_id}'")


class SyncInProgressError(MedSyncError):
    """A reconciliation pass is already running for this entity."""

    def __init__(self, entity_id: str, state: str):
        self.entity_id = entity_id
        self.state = state
        super().__init__(f"Sync already in progress for entity '{entity_id}' (state: {state})")


class KeyDerivationError(ValueError):
    """A record carries neither an NDC, an RXCUI nor a name."""
