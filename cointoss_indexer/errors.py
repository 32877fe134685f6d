class IndexerError(Exception):
    """Base class for errors raised while deriving state from chain logs."""


class StoreUnavailableError(IndexerError):
    """The entity store could not be read or written.

    Fatal for the log being processed; the caller is expected to retry the
    same log once the store is reachable again.
    """


class MalformedEventError(IndexerError):
    """A decoded log is missing a parameter or carries one of the wrong type."""


class InvalidTransitionError(IndexerError):
    def __init__(self, pool_id: str, current: str, target: str):
        super().__init__(f"pool {pool_id}: {current} -> {target} is not allowed")
        self.pool_id = pool_id
        self.current = current
        self.target = target
