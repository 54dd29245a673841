from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

from .client import NugetdockError
from .packages import InstalledSet, PackageIdentity
from .reconcile import Action, Classification

logger = logging.getLogger(__name__)


class InstallStore(Protocol):
    def list_installed(self) -> InstalledSet:
        ...

    def materialize(self, candidate: PackageIdentity) -> None:
        ...

    def remove(self, identity: PackageIdentity) -> None:
        ...

    def replace(self, old: PackageIdentity, new: PackageIdentity) -> None:
        ...


class ActionError(NugetdockError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InstallFailed(ActionError):
    pass


class UninstallFailed(ActionError):
    pass


class ReplaceFailed(ActionError):
    pass


class ActionInProgress(ActionError):
    pass


@dataclass(frozen=True)
class ActionResult:
    action: Action
    ok: bool
    error: ActionError | None = None


class ActionExecutor:
    """
    Applies install/uninstall/update/downgrade against an InstallStore.

    Owns the InstalledSet snapshot. Every mutating call either completes or
    fails before the next one may start; a call made while another is running
    is rejected with ActionInProgress. Failures come back as ActionResult
    values, never as exceptions.
    """

    def __init__(self, store: InstallStore, *, installed: InstalledSet | None = None) -> None:
        self.store = store
        self._installed = installed
        self._lock = threading.Lock()

    @property
    def installed(self) -> InstalledSet:
        if self._installed is None:
            self._installed = self.store.list_installed()
        return self._installed

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def refresh(self) -> InstalledSet:
        self._installed = self.store.list_installed()
        return self._installed

    def _run(self, action: Action, failure: type[ActionError], body: Callable[[], None]) -> ActionResult:
        if not self._lock.acquire(blocking=False):
            logger.info("Rejected %s: another action is in progress", action.value)
            return ActionResult(action=action, ok=False, error=ActionInProgress("Another action is in progress."))
        try:
            snapshot = self._installed
            try:
                body()
            except Exception as e:  # noqa: BLE001 - any store failure becomes a result
                self._installed = snapshot
                logger.warning("%s failed: %s", action.value, e)
                return ActionResult(action=action, ok=False, error=failure(str(e)))
            try:
                self._installed = self.store.list_installed()
            except Exception as e:  # noqa: BLE001
                # The store has changed; the old snapshot no longer describes it.
                self._installed = None
                logger.warning("%s applied but reloading installed packages failed: %s", action.value, e)
                return ActionResult(
                    action=action,
                    ok=False,
                    error=failure(f"Applied, but reloading installed packages failed: {e}"),
                )
            logger.info("%s finished", action.value)
            return ActionResult(action=action, ok=True)
        finally:
            self._lock.release()

    def install(self, candidate: PackageIdentity) -> ActionResult:
        logger.info("Installing %s", candidate)
        return self._run(Action.INSTALL, InstallFailed, lambda: self.store.materialize(candidate))

    def uninstall(self, identity: PackageIdentity) -> ActionResult:
        def _body() -> None:
            # Optimistic: hide it from readers while the store call runs.
            self._installed = self.installed.without(identity)
            self.store.remove(identity)

        logger.info("Uninstalling %s", identity)
        return self._run(Action.UNINSTALL, UninstallFailed, _body)

    def _replace(self, action: Action, old: PackageIdentity, new: PackageIdentity) -> ActionResult:
        logger.info("Replacing %s with %s", old, new)
        return self._run(action, ReplaceFailed, lambda: self.store.replace(old, new))

    def update(self, old: PackageIdentity, new: PackageIdentity) -> ActionResult:
        return self._replace(Action.UPDATE, old, new)

    def downgrade(self, old: PackageIdentity, new: PackageIdentity) -> ActionResult:
        return self._replace(Action.DOWNGRADE, old, new)

    def apply(self, classification: Classification) -> ActionResult:
        action = classification.action
        candidate = classification.candidate
        if action is Action.INSTALL:
            return self.install(candidate)
        if action is Action.UNINSTALL:
            return self.uninstall(classification.installed or candidate)
        if action in (Action.UPDATE, Action.DOWNGRADE) and classification.installed is not None:
            return self._replace(action, classification.installed, candidate)
        return ActionResult(action=Action.NONE, ok=True)
