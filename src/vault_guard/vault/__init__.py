"""Vault service access for Vault Guard."""
