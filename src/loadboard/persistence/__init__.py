"""Audit log, event sinks and the state snapshot store."""
