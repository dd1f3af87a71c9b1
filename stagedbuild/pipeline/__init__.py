"""Pipeline orchestration and run history module.

This module handles:
- The staged build state machine
- Recording pipeline runs in the database
"""
