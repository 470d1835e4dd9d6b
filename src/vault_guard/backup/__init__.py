"""Backup module for Vault Guard.

Writes rotated safety copies of content before destructive operations.
"""
