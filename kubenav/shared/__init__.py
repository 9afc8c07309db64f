"""Shared helpers used by the session, navigation and command layers."""
