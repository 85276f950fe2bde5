"""fieldsync — incremental Jobber sync engine and opportunity analytics."""

__version__ = "1.0.0"
