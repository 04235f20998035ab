"""Signed task mailbox over a shared object store."""

__version__ = "1.0.0"
