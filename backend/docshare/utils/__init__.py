"""Invariant checks and concurrency helpers."""
