"""Executor module for Vault Guard.

This module runs vault operations through the guardrail pipeline:
- Prior-state fetch and ambiguity checks
- Confirmation handling and backups
- Batch execution with per-item gating
- Audit trail management
"""
