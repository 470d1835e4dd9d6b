"""Safety module for Vault Guard.

This module provides the safety controls for vault modifications:
- Risk classification of proposed operations
- Confirmation tokens proportional to risk
- The shared error taxonomy

CRITICAL: Critical operations can never skip their confirmation, not even
with DANGEROUSLY_SKIP_CONFIRMATIONS enabled.
"""
