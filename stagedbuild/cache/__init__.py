"""Dependency artifact cache module.

This module handles:
- The CacheStore interface and its local, in-memory and remote stores
- Archive transport of artifact sets
- Per-key locking so one builder populates a missing key
"""
