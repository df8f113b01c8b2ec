"""Pipelines for bulk song import and stale presentation cleanup.

Each stage is callable on its own so the HTTP layer and tests can drive
them independently.
"""
