"""
Transmute
=========

Migrates legacy applications slice by slice with a checkpointed,
self-healing build pipeline.
"""

__version__ = "0.1.0"
