"""
Composition root.

Exports:
    - TrustEngine: Container of the wired services
    - build_trust_engine: Wires every service by constructor injection
"""

from .engine import TrustEngine, build_trust_engine, derive_ip_secret

__all__ = ["TrustEngine", "build_trust_engine", "derive_ip_secret"]
