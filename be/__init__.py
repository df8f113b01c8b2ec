"""Backend package: DB models, repositories, pipelines, APIs.

This package serves songs, psalms and presentation slides, and runs the
bulk song import pipeline (validation, fuzzy de-duplication, chunked
inserts, outcome reconciliation).
"""
