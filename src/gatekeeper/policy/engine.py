"""
Policy Engine for Gatekeeper.

The Policy Engine is the security boundary of the gateway. Every tool call
passes through evaluate() before it is forwarded.

Design Principles:
    - Deny-by-default: A call is blocked unless some allowance grants it
    - Fail-closed: Type mismatches in parameters are denials, not crashes
    - Predictable: Policies are scanned in a fixed order
    - Auditable: Every denial carries a reason

How it works:
    1. start() loads every policy file in the directory into the store
    2. The watcher keeps the store current as files change
    3. evaluate() scans the current store snapshot
    4. stop() shuts the watcher down
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from gatekeeper.errors import LoadError, WatchError
from gatekeeper.policy.evaluator import evaluate
from gatekeeper.policy.loader import LoadReport, PolicyLoader, is_policy_file, source_id_for
from gatekeeper.policy.store import PolicyStore
from gatekeeper.policy.watcher import DEFAULT_DEBOUNCE_SECONDS, PolicyWatcher
from gatekeeper.schema import Decision

logger = logging.getLogger(__name__)


class PolicyEngine:
    """
    Loads, hot-reloads and evaluates policies from a directory.

    Usage:
        with PolicyEngine("policies") as engine:
            decision = engine.evaluate("finance-agent", "payments", "create", {"amount": 10})
            if not decision.allowed:
                print(decision.reason)

    Attributes:
        loader: Reads policy files from the directory
        store: Currently published policies
        watcher: Hot-reload activity (None when watching is disabled)
        continue_on_condition_failure: Evaluation mode, see evaluator
    """

    def __init__(
        self,
        policies_dir: Path | str,
        watch: bool = True,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        continue_on_condition_failure: bool = False,
        observer_factory: Callable[[], BaseObserver] | None = Observer,
    ) -> None:
        """
        Initialize the policy engine. Nothing is read until start().

        Args:
            policies_dir: Directory holding .yaml/.yml policy documents
            watch: Enable hot-reload
            debounce_seconds: Quiet window before a changed file is reloaded
            continue_on_condition_failure: Keep scanning after a matching
                allowance fails its conditions
            observer_factory: Builds the watchdog observer; None disables
                filesystem notifications
        """
        self.loader = PolicyLoader(policies_dir)
        self.store = PolicyStore()
        self.continue_on_condition_failure = continue_on_condition_failure
        self.watcher: PolicyWatcher | None = None

        if watch:
            self.watcher = PolicyWatcher(
                self.loader.directory,
                on_reload=self.reload_source,
                on_remove=self.remove_source,
                debounce_seconds=debounce_seconds,
                observer_factory=observer_factory,
            )

    @property
    def directory(self) -> Path:
        """Absolute policy directory."""
        return self.loader.directory

    @property
    def watching(self) -> bool:
        """Whether hot-reload is currently active."""
        return self.watcher is not None and self.watcher.running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> LoadReport:
        """
        Load all policies and start hot-reload.

        Returns:
            Report of the initial load

        Raises:
            ConfigError: If the policy directory is missing or unreadable
        """
        report = self.load_all()
        logger.info(
            "Loaded %d policy file(s) from %s (%d failed)",
            len(report.policies),
            self.directory,
            len(report.errors),
        )

        if self.watcher is not None:
            try:
                self.watcher.start()
            except WatchError as e:
                logger.error("Hot-reload disabled: %s", e.message)

        return report

    def stop(self) -> None:
        """Stop hot-reload. The store keeps its last contents."""
        if self.watcher is not None:
            self.watcher.stop()

    def __enter__(self) -> "PolicyEngine":
        """Start the engine."""
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        """Stop the engine."""
        self.stop()

    # =========================================================================
    # Store updates
    # =========================================================================

    def load_all(self) -> LoadReport:
        """
        Load every policy file and publish the ones that validate.

        Raises:
            ConfigError: If the policy directory is missing or unreadable
        """
        report = self.loader.load_directory()
        for policy in report.policies:
            self.store.put(policy)
            logger.info("Loaded policy file: %s", policy.source_id)
        return report

    def reload_source(self, source_id: str) -> bool:
        """
        Re-read one policy file and replace its store entry.

        The previous entry stays in place if the file no longer validates.

        Returns:
            True if the entry was replaced
        """
        if not is_policy_file(source_id):
            return False

        try:
            policy = self.loader.load_file(source_id)
        except LoadError as e:
            logger.error("Failed to reload policy file %s: %s", e.source, e.reason)
            return False

        self.store.put(policy)
        logger.info("Hot-reloaded policy file: %s", policy.source_id)
        return True

    def remove_source(self, source_id: str) -> bool:
        """
        Drop the store entry for a source that disappeared.

        Returns:
            True if an entry was removed
        """
        removed = self.store.remove(source_id_for(source_id))
        if removed:
            logger.info("Removed policy file: %s", source_id)
        return removed

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(
        self,
        agent_id: str,
        tool: str,
        action: str,
        params: dict[str, Any] | None = None,
    ) -> Decision:
        """
        Decide whether an agent may perform an action on a tool.

        Args:
            agent_id: Calling agent
            tool: Requested tool
            action: Requested action
            params: Parsed request body

        Returns:
            Decision with the outcome and, on denial, the reason
        """
        return evaluate(
            self.store.snapshot(),
            agent_id,
            tool,
            action,
            params or {},
            continue_on_condition_failure=self.continue_on_condition_failure,
        )
