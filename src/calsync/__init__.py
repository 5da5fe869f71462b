"""calsync: Google Calendar incremental sync engine with a loopback OAuth backend."""

__version__ = "0.1.0"
