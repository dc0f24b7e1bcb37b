"""Bulk Assignment Module.

Assigns apps and configuration profiles to groups in bulk:
- Skip assignments that already exist
- Partition work into $batch-sized chunks
- Honour 429 backpressure across every batch of a run
- Retry transient failures, fail fast on permanent ones
- Report live progress and verify by refreshing cached state

Architecture: Clean Architecture with Hexagonal (Ports & Adapters)
"""
