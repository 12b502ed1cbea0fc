from __future__ import annotations


class StatsTimeseriesError(Exception):
    pass


class ConfigurationError(StatsTimeseriesError):
    """Missing or invalid grain, anchor, flag or setting."""


class SchemaPrerequisiteMissing(StatsTimeseriesError):
    """The rollup sink table does not exist."""


class DataSourceUnavailable(StatsTimeseriesError):
    """Facts could not be read; nothing was written."""


class UpsertFailure(StatsTimeseriesError):
    """The write transaction failed and was rolled back."""


class LockNotAcquired(StatsTimeseriesError):
    pass
