"""
Callout: volunteer alerting backend.

The ``upstream`` package keeps local Structures and Volunteers reconciled with
the periodically re-fetched upstream feed.
"""
