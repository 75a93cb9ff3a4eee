"""
Core application engine for orchestrating offline downloads.

This package contains the primary logic. The `AssetPersistenceManager` runs
each asset's download pipeline, tracking in-flight fetches in the
`TaskRegistry` and publishing progress through the `EventNotifier`.
"""
