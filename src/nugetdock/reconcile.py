"""Classify a candidate package against the installed set and derive the action to offer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .packages import InstalledSet, PackageIdentity, PackageListing, same_identity
from .versions import MalformedVersion, try_compare_versions

logger = logging.getLogger(__name__)


class Relationship(Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLED_EXACT = "installed_exact"
    INSTALLED_OLDER = "installed_older"
    INSTALLED_NEWER = "installed_newer"
    INSTALLED_EQUAL_VERSION_DIFFERENT_STRING = "installed_equal_version_different_string"


class Action(Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPDATE = "update"
    DOWNGRADE = "downgrade"
    NONE = "none"


_ACTIONS = {
    Relationship.NOT_INSTALLED: Action.INSTALL,
    Relationship.INSTALLED_EXACT: Action.UNINSTALL,
    Relationship.INSTALLED_OLDER: Action.UPDATE,
    Relationship.INSTALLED_NEWER: Action.DOWNGRADE,
    Relationship.INSTALLED_EQUAL_VERSION_DIFFERENT_STRING: Action.NONE,
}


def action_for(relationship: Relationship) -> Action:
    return _ACTIONS[relationship]


@dataclass(frozen=True)
class Classification:
    candidate: PackageIdentity
    relationship: Relationship
    installed: PackageIdentity | None = None
    error: MalformedVersion | None = None

    @property
    def action(self) -> Action:
        return action_for(self.relationship)

    @property
    def comparable(self) -> bool:
        return self.error is None

    @property
    def label(self) -> str:
        action = self.action
        if action is Action.INSTALL:
            return "Install"
        if action is Action.UNINSTALL:
            return "Uninstall"
        if action is Action.UPDATE and self.installed is not None:
            return f"Update [{self.installed.version}]"
        if action is Action.DOWNGRADE and self.installed is not None:
            return f"Downgrade [{self.installed.version}]"
        return ""


def classify(candidate: PackageIdentity, installed: InstalledSet) -> Classification:
    entry = installed.get(candidate.id)
    if entry is None:
        return Classification(candidate=candidate, relationship=Relationship.NOT_INSTALLED)
    if same_identity(entry, candidate):
        return Classification(candidate=candidate, relationship=Relationship.INSTALLED_EXACT, installed=entry)

    result = try_compare_versions(entry.version, candidate.version)
    if not result.comparable:
        logger.warning("Cannot compare %s with installed %s: %s", candidate, entry, result.error)
    if result.order < 0:
        relationship = Relationship.INSTALLED_OLDER
    elif result.order > 0:
        relationship = Relationship.INSTALLED_NEWER
    else:
        relationship = Relationship.INSTALLED_EQUAL_VERSION_DIFFERENT_STRING
    return Classification(candidate=candidate, relationship=relationship, installed=entry, error=result.error)


def classify_listing(
    candidates: Iterable[PackageIdentity | PackageListing],
    installed: InstalledSet,
) -> list[Classification]:
    out: list[Classification] = []
    for item in candidates:
        identity = item.identity if isinstance(item, PackageListing) else item
        out.append(classify(identity, installed))
    return out
