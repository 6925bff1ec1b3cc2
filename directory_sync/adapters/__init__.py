"""Adapters layer for Directory Sync.

This module contains the adapters that talk to external systems. Adapters
implement Port interfaces defined in the domain layer and handle the
translation between wire formats and domain models.
"""
