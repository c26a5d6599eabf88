"""
Policy Engine module for Gatekeeper.

This module implements the core security model: deny-by-default policy
enforcement over a directory of hot-reloaded YAML documents.

Key concepts:
    - PolicyLoader: Reads and validates policy files
    - PolicyStore: Snapshot-swap store readers never wait on
    - PolicyWatcher: Debounced hot-reload from filesystem notifications
    - PolicyEngine: Ties the above together and answers evaluate()
"""

from gatekeeper.policy.engine import PolicyEngine
from gatekeeper.policy.evaluator import evaluate
from gatekeeper.policy.loader import LoadReport, PolicyLoader
from gatekeeper.policy.store import PolicyStore
from gatekeeper.policy.watcher import PolicyWatcher, WatchEvent

__all__ = [
    "LoadReport",
    "PolicyEngine",
    "PolicyLoader",
    "PolicyStore",
    "PolicyWatcher",
    "WatchEvent",
    "evaluate",
]
