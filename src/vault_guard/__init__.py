"""Vault Guard - guardrails for Obsidian Local REST API operations.

Every mutation of the vault is classified into a risk tier, gated by a
confirmation step proportional to that tier, and preceded by a backup of
the content it destroys.
"""

__version__ = "0.1.0"
