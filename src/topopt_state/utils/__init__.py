"""Logging and IO helpers."""
