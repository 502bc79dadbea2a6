from __future__ import annotations

import json
import shutil
from pathlib import Path
from uuid import UUID

import pytest

from mdevctl.core.environment import Environment

PARENT = "0000:00:02.0"
OTHER_PARENT = "0000:00:03.0"
TYPE = "i915-GVTg_V5_4"
OTHER_TYPE = "i915-GVTg_V5_8"
UUID_A = UUID("976d8cc2-4bfc-43b9-b9f9-f4af2de91ab9")
UUID_B = UUID("59e8b599-afdd-4766-a59e-415ef4f5e492")


class ScratchEnvironment(Environment):
    """Environment rooted in a pytest tmp_path with helpers to fake sysfs."""

    def __init__(self, root: Path) -> None:
        self._root = root
        for directory in (
            self.persist_base(),
            self.callout_dir(),
            self.notification_dir(),
            self.mdev_base(),
            self.parent_base(),
        ):
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def add_parent(
        self,
        parent: str = PARENT,
        types: dict[str, int] | None = None,
        *,
        device_api: str = "vfio-pci",
    ) -> Path:
        types = {TYPE: 1} if types is None else types
        supported = self.parent_base() / parent / "mdev_supported_types"
        supported.mkdir(parents=True, exist_ok=True)
        for typename, available in types.items():
            type_dir = supported / typename
            type_dir.mkdir(exist_ok=True)
            (type_dir / "available_instances").write_text(f"{available}\n")
            (type_dir / "device_api").write_text(f"{device_api}\n")
            (type_dir / "create").write_text("")
        return supported

    def add_active(
        self,
        uuid: UUID,
        parent: str = PARENT,
        mdev_type: str = TYPE,
        *,
        attrs: tuple[str, ...] = (),
        broken_type: bool = False,
    ) -> Path:
        supported = self.add_parent(parent, {mdev_type: 1})
        device_dir = self.parent_base() / parent / str(uuid)
        device_dir.mkdir(parents=True, exist_ok=True)
        (device_dir / "remove").write_text("")
        for attr in attrs:
            (device_dir / attr).write_text("")
        target = supported / (f"{mdev_type}-gone" if broken_type else mdev_type)
        (device_dir / "mdev_type").symlink_to(target)
        (self.mdev_base() / str(uuid)).symlink_to(device_dir)
        return device_dir

    def settle_create(self, parent: str = PARENT, mdev_type: str = TYPE) -> Path:
        """Do what the kernel does after a uuid is written to `create`."""
        create = self.parent_base() / parent / "mdev_supported_types" / mdev_type / "create"
        return self.add_active(UUID(create.read_text()), parent, mdev_type)

    def settle_remove(self, uuid: UUID) -> None:
        """Do what the kernel does after `1` is written to `remove`."""
        link = self.mdev_base() / str(uuid)
        device_dir = link.resolve(strict=True)
        assert (device_dir / "remove").read_text() == "1"
        link.unlink()
        shutil.rmtree(device_dir)

    def add_defined(
        self,
        uuid: UUID,
        parent: str = PARENT,
        mdev_type: str = TYPE,
        *,
        start: str = "manual",
        attrs: list[dict[str, str]] | None = None,
    ) -> Path:
        path = self.persist_base() / parent / str(uuid)
        path.parent.mkdir(parents=True, exist_ok=True)
        doc = {"mdev_type": mdev_type, "start": start, "attrs": attrs or []}
        path.write_text(json.dumps(doc))
        return path

    def add_callout(self, name: str, body: str, *, legacy: bool = False) -> Path:
        directory = self.old_callout_dir() if legacy else self.callout_dir()
        return write_script(directory / name, body)

    def add_notifier(self, name: str, body: str) -> Path:
        return write_script(self.notification_dir() / name, body)

    def definition(self, uuid: UUID, parent: str = PARENT) -> dict:
        return json.loads((self.persist_base() / parent / str(uuid)).read_text())


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    # the handle is closed before anything executes the script
    path.write_text(body)
    path.chmod(0o755)
    return path


def callout_body(
    *,
    rc: int = 0,
    log: Path | None = None,
    stdout: str = "",
    capabilities: str | None = None,
    events: dict[str, int] | None = None,
) -> str:
    """Shell callout script.

    Records "<event> <action> <state>" lines to `log`, prints `stdout` and
    exits with `rc` (or the per-event code in `events`). Without
    `capabilities` the script rejects the capability query and is treated as
    unversioned.
    """
    lines = [
        "#!/bin/sh",
        'event="$4"',
        'action="$6"',
        'state="$8"',
        'if [ "$event" = get ] && [ "$action" = capabilities ]; then',
    ]
    if log is not None:
        lines.append(f'  echo "$event $action $state" >> "{log}"')
    if capabilities is None:
        lines.append("  exit 1")
    else:
        lines.append(f"  printf '%s' '{capabilities}'")
        lines.append("  exit 0")
    lines.append("fi")
    if log is not None:
        lines.append(f'echo "$event $action $state" >> "{log}"')
    if stdout:
        lines.append(f"printf '%s' '{stdout}'")
    for event, code in (events or {}).items():
        lines.append(f'[ "$event" = {event} ] && exit {code}')
    lines.append(f"exit {rc}")
    return "\n".join(lines) + "\n"


def read_log(path: Path, *, capabilities: bool = False) -> list[str]:
    if not path.exists():
        return []
    lines = path.read_text().splitlines()
    if capabilities:
        return lines
    return [line for line in lines if not line.startswith("get capabilities")]


@pytest.fixture
def env(tmp_path: Path) -> ScratchEnvironment:
    return ScratchEnvironment(tmp_path / "root")
