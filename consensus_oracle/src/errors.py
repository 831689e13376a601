"""Exception hierarchy for the consensus oracle.

Only :class:`ConfigurationError` is fatal. Everything else is raised by a
collaborator, caught at the call site in the orchestrator, logged, and
retried on the next cycle.
"""


class OracleError(Exception):
    """Base exception for oracle errors."""

    pass


class SourceUnavailable(OracleError):
    """A single price source timed out or failed for this cycle.

    :ivar source: Name of the failing source.
    """

    def __init__(self, source: str, message: str):
        """Initialize the error.

        :param source: Source name.
        :param message: Failure description.
        """
        self.source = source
        super().__init__(f"[{source}] {message}")


class PersistenceFailure(OracleError):
    """Writing a price point to the persistence store failed."""

    pass


class SettlementSyncFailure(OracleError):
    """Pushing an aggregated price to the settlement layer failed.

    :ivar asset: Asset whose sync failed, if known.
    """

    def __init__(self, message: str, asset: str | None = None):
        """Initialize the error.

        :param message: Failure description.
        :param asset: Asset symbol the failure relates to.
        """
        self.asset = asset
        super().__init__(message)


class ConfigurationError(OracleError, ValueError):
    """Invalid configuration detected at startup."""

    pass
