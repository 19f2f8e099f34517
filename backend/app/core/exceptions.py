class DataVoyagerError(Exception):
    """Base class for errors raised by the datasource layer."""


class ConfigurationError(DataVoyagerError, ValueError):
    """A connection config is malformed or misses a mandatory field."""


class UnsupportedDataSourceError(DataVoyagerError):
    """No plugin is registered for the requested datasource type."""


class ConnectionFailedError(DataVoyagerError):
    """Opening or verifying a connection to a datasource failed."""


class QueryExecutionError(DataVoyagerError):
    """The datasource rejected a query."""


class DuplicateDataSourceError(DataVoyagerError):
    """A datasource with the same name is already registered."""
