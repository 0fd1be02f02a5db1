from __future__ import annotations


class BlueprintEngineError(Exception):
    """Base class for every failure the project engine reports."""


class StoreReadError(BlueprintEngineError):
    """Persisted projects could not be read. Distinct from an empty store."""


class StoreWriteError(BlueprintEngineError):
    """A project record could not be written or removed."""


class NotApprovableError(BlueprintEngineError):
    """The requested stage operation is out of sequence or already in flight."""


class GatewayDispatchError(BlueprintEngineError):
    """The agent dispatch gateway failed, timed out, or returned unusable output."""
