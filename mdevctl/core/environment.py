"""Filesystem locations used by mdevctl.

Every path mdevctl touches is derived from a single root so that tests can run
against a scratch tree instead of the live system.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

from mdevctl.core.errors import EnvironmentCheckError
from mdevctl.core.model import ScriptTier

LOGGER = logging.getLogger(__name__)

ENV_ROOT_VAR = "MDEVCTL_ENV_ROOT"


class Environment(Protocol):
    @property
    def root(self) -> Path:
        """Filesystem root all other paths are resolved against."""

    def mdev_base(self) -> Path:
        return self.root / "sys/bus/mdev/devices"

    def persist_base(self) -> Path:
        return self.root / "etc/mdevctl.d"

    def parent_base(self) -> Path:
        return self.root / "sys/class/mdev_bus"

    def scripts_base(self) -> Path:
        return self.root / "usr/lib/mdevctl/scripts.d"

    def old_scripts_base(self) -> Path:
        return self.persist_base() / "scripts.d"

    def callout_dir(self) -> Path:
        return self.scripts_base() / "callouts"

    def old_callout_dir(self) -> Path:
        return self.old_scripts_base() / "callouts"

    def notification_dir(self) -> Path:
        return self.scripts_base() / "notifiers"

    def old_notification_dir(self) -> Path:
        return self.old_scripts_base() / "notifiers"

    def callout_dirs(self) -> list[tuple[ScriptTier, Path]]:
        return [
            (ScriptTier.CURRENT, self.callout_dir()),
            (ScriptTier.LEGACY, self.old_callout_dir()),
        ]

    def notification_dirs(self) -> list[tuple[ScriptTier, Path]]:
        return [
            (ScriptTier.CURRENT, self.notification_dir()),
            (ScriptTier.LEGACY, self.old_notification_dir()),
        ]

    def self_check(self) -> None:
        LOGGER.debug("checking that the environment is sane")
        # distro packages or 'make install' are expected to create these
        for directory in (self.persist_base(), self.callout_dir(), self.notification_dir()):
            if not directory.exists():
                raise EnvironmentCheckError(
                    f"Required directory {directory} doesn't exist. "
                    "This may indicate a packaging or installation error"
                )


class DefaultEnvironment(Environment):
    """Environment rooted at $MDEVCTL_ENV_ROOT, or '/' when unset."""

    def __init__(self, root: str | Path | None = None) -> None:
        if root is None:
            root = os.environ.get(ENV_ROOT_VAR, "/")
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def __repr__(self) -> str:
        return (
            f"DefaultEnvironment(mdev_base={self.mdev_base()}, "
            f"persist_base={self.persist_base()}, parent_base={self.parent_base()})"
        )
