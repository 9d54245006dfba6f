"""
Lib package for the Trust & Compliance Engine.

Contains shared utilities:
- config.py: Environment-driven settings (ComplianceSettings)
- encryption.py: KeyManager (key derivation, AES-256-GCM, hashing)
- exceptions.py: Exception taxonomy and error response builder
- locks.py: Per-user / global sweep advisory locks
- logging.py: structlog setup
- security.py: Log-safe ids, IP hashing, master key loading
"""
