"""Representation of a mediated device.

An `MDev` is assembled per command from a persisted definition, a live sysfs
snapshot, or both, and carries out the side effects of the lifecycle
operations: creating and removing the live device and writing or deleting the
definition file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import UUID

from mdevctl.core.environment import Environment
from mdevctl.core.errors import (
    AlreadyExistsError,
    AttributeIndexError,
    ConflictingParentOrTypeError,
    DefinitionError,
    DeviceIOError,
    MissingParentError,
    MissingTypeError,
    NoAvailableInstancesError,
    ParentNotRegisteredError,
    UnsupportedTypeError,
)
from mdevctl.core.model import SysfsSnapshot
from mdevctl.core.schema import DEFINITION_SCHEMA, validate

LOGGER = logging.getLogger(__name__)


def _canonical_basename(path: Path) -> str | None:
    try:
        return path.resolve(strict=True).name
    except (OSError, RuntimeError):
        return None


def read_sysfs_snapshot(env: Environment, uuid: UUID) -> SysfsSnapshot:
    path = env.mdev_base() / str(uuid)
    if not path.is_symlink():
        return SysfsSnapshot(uuid=uuid, path=path)

    parent: str | None = None
    mdev_type: str | None = None
    try:
        parent = path.resolve(strict=True).parent.name
    except (OSError, RuntimeError) as exc:
        LOGGER.debug("Unable to resolve parent of %s: %s", path, exc)
    if parent is not None:
        mdev_type = _canonical_basename(path / "mdev_type")
        if mdev_type is None:
            LOGGER.debug("Device %s exists but its mdev_type link does not resolve", uuid)
    return SysfsSnapshot(uuid=uuid, active=True, parent=parent, mdev_type=mdev_type, path=path)


def parse_attribute_list(items: list[dict[str, str]]) -> list[tuple[str, str]]:
    attrs: list[tuple[str, str]] = []
    for item in items:
        for key, value in item.items():
            attrs.append((key, value))
    return attrs


def write_attribute(basepath: Path, attr: str, value: str) -> None:
    LOGGER.debug("Writing attribute '%s' -> '%s'", attr, value)
    path = basepath / attr
    if not path.exists():
        raise DeviceIOError(f"Invalid attribute '{attr}'")
    try:
        path.write_text(value, encoding="utf-8")
    except OSError as exc:
        raise DeviceIOError(f"Failed to write {value} to attribute {attr}") from exc


@dataclass
class MDev:
    env: Environment = field(repr=False, compare=False)
    uuid: UUID
    active: bool = False
    autostart: bool = False
    parent: str | None = None
    mdev_type: str | None = None
    attrs: list[tuple[str, str]] = field(default_factory=list)

    @property
    def path(self) -> Path:
        return self.env.mdev_base() / str(self.uuid)

    def require_parent(self) -> str:
        if self.parent is None:
            raise MissingParentError(f"Device {self.uuid} must have a defined parent")
        return self.parent

    def require_type(self) -> str:
        if self.mdev_type is None:
            raise MissingTypeError("Device must have a defined mdev_type")
        return self.mdev_type

    def persist_path(self) -> Path | None:
        if self.parent is None:
            return None
        return self.env.persist_base() / self.parent / str(self.uuid)

    def is_defined(self) -> bool:
        path = self.persist_path()
        return path is not None and path.is_file()

    def load_from_sysfs(self, *, strict: bool = True) -> SysfsSnapshot:
        LOGGER.debug("Loading device '%s' from sysfs", self.uuid)
        snapshot = read_sysfs_snapshot(self.env, self.uuid)
        self.apply_snapshot(snapshot, strict=strict)
        return snapshot

    def apply_snapshot(self, snapshot: SysfsSnapshot, *, strict: bool = True) -> None:
        """Merge live state into this record.

        Live state never carries attributes or a start policy. When the live
        device disagrees with an already known parent or type, either raise
        (`strict`) or treat the live device as a different one.
        """
        if not snapshot.active:
            self.active = False
            return

        conflict: str | None = None
        if self.parent is not None and snapshot.parent is not None and self.parent != snapshot.parent:
            conflict = f"Device {self.uuid} is active under parent {snapshot.parent}, not {self.parent}"
        elif (
            self.mdev_type is not None
            and snapshot.mdev_type is not None
            and self.mdev_type != snapshot.mdev_type
        ):
            conflict = (
                f"Device {self.uuid} is active with type {snapshot.mdev_type}, "
                f"not {self.mdev_type}"
            )

        if conflict is not None:
            if strict:
                raise ConflictingParentOrTypeError(conflict)
            LOGGER.warning("%s", conflict)
            self.active = False
            return

        self.active = True
        if snapshot.parent is not None:
            self.parent = snapshot.parent
        if snapshot.mdev_type is not None:
            self.mdev_type = snapshot.mdev_type

    def override(self, parent: str | None = None, mdev_type: str | None = None) -> None:
        """Apply caller-supplied parent/type on top of what is already known."""
        if parent is not None:
            if self.parent is not None and self.parent != parent:
                LOGGER.warning(
                    "Overwriting parent for mdev %s: %s => %s", self.uuid, self.parent, parent
                )
                # the running device belongs to another parent
                self.active = False
            self.parent = parent
        if mdev_type is not None:
            if self.mdev_type is not None and self.mdev_type != mdev_type:
                if self.active:
                    raise ConflictingParentOrTypeError(
                        f"Device {self.uuid} is active on {self.parent} with type "
                        f"{self.mdev_type}; its type cannot be changed to {mdev_type}"
                    )
                LOGGER.warning(
                    "Overwriting mdev type for mdev %s: %s => %s",
                    self.uuid,
                    self.mdev_type,
                    mdev_type,
                )
            self.mdev_type = mdev_type

    def load_from_json(self, parent: str, doc: Any, *, source: str | None = None) -> None:
        LOGGER.debug("Loading device '%s' from json (parent: %s)", self.uuid, parent)
        validate(
            doc,
            DEFINITION_SCHEMA,
            error_cls=DefinitionError,
            source=source or f"device {self.uuid}",
        )
        if self.parent is not None and self.parent != parent:
            LOGGER.warning("Overwriting parent for mdev %s: %s => %s", self.uuid, self.parent, parent)
        self.parent = parent
        if self.mdev_type is not None and self.mdev_type != doc["mdev_type"]:
            LOGGER.warning(
                "Overwriting mdev type for mdev %s: %s => %s",
                self.uuid,
                self.mdev_type,
                doc["mdev_type"],
            )
        self.mdev_type = doc["mdev_type"]
        self.autostart = doc["start"] == "auto"
        self.attrs = parse_attribute_list(doc.get("attrs", []))

    def load_definition(self) -> None:
        path = self.persist_path()
        if path is None:
            raise MissingParentError(f"Device {self.uuid} must have a defined parent")
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DeviceIOError(f"Unable to read definition {path}") from exc
        try:
            doc = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DefinitionError(f"Invalid JSON in {path}: {exc}") from exc
        self.load_from_json(path.parent.name, doc, source=str(path))

    def to_json(self, include_uuid: bool = False) -> dict[str, Any]:
        partial: dict[str, Any] = {
            "mdev_type": self.mdev_type,
            "start": "auto" if self.autostart else "manual",
            "attrs": [{key: value} for key, value in self.attrs],
        }
        if include_uuid:
            return {str(self.uuid): partial}
        return partial

    def to_text(self, *, defined: bool, verbose: bool = False) -> str:
        output = f"{self.uuid} {self.parent} {self.mdev_type} {'auto' if self.autostart else 'manual'}"
        if defined and self.active:
            output += " (active)"
        elif not defined and self.is_defined():
            output += " (defined)"
        output += "\n"
        if verbose and self.attrs:
            output += "  Attrs:\n"
            for i, (key, value) in enumerate(self.attrs):
                output += f"    @{{{i}}}: {json.dumps({key: value}, separators=(',', ':'))}\n"
        return output

    def create(self) -> None:
        LOGGER.debug("Creating mdev %s", self.uuid)
        parent = self.require_parent()
        mdev_type = self.require_type()

        existing = read_sysfs_snapshot(self.env, self.uuid)
        if existing.active:
            if existing.parent != parent:
                raise ConflictingParentOrTypeError("Device exists under different parent")
            if existing.mdev_type is not None and existing.mdev_type != mdev_type:
                raise ConflictingParentOrTypeError("Device exists with different type")
            raise AlreadyExistsError("Device already exists")

        path = self.env.parent_base() / parent / "mdev_supported_types"
        LOGGER.debug("Checking parent for mdev support: %s", path)
        if not path.is_dir():
            raise ParentNotRegisteredError(
                f"Parent {parent} is not currently registered for mdev support"
            )
        path = path / mdev_type
        LOGGER.debug("Checking parent for mdev type %s: %s", mdev_type, path)
        if not path.is_dir():
            raise UnsupportedTypeError(f"Parent {parent} does not support mdev type {mdev_type}")

        instances_path = path / "available_instances"
        try:
            available = int(instances_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError) as exc:
            raise DeviceIOError(f"Unable to read {instances_path}") from exc
        LOGGER.debug("Available instances: %d", available)
        if available == 0:
            raise NoAvailableInstancesError(f"No available instances of {mdev_type} on {parent}")

        create_path = path / "create"
        LOGGER.debug("Creating mediated device: %s -> %s", self.uuid, create_path)
        try:
            create_path.write_text(str(self.uuid), encoding="utf-8")
        except OSError as exc:
            raise DeviceIOError(
                f"Failed to create mdev {self.uuid}, type {mdev_type} on {parent}"
            ) from exc
        self.active = True

    def start(self) -> None:
        self.create()

        LOGGER.debug("Setting attributes for mdev %s", self.uuid)
        for key, value in self.attrs:
            try:
                write_attribute(self.path, key, value)
            except DeviceIOError:
                try:
                    self.stop()
                except DeviceIOError as stop_exc:
                    LOGGER.warning(
                        "Unable to remove mdev %s after attribute failure: %s", self.uuid, stop_exc
                    )
                raise

    def stop(self) -> None:
        LOGGER.debug("Removing mdev %s", self.uuid)
        remove_path = self.path / "remove"
        try:
            remove_path.write_text("1", encoding="utf-8")
        except OSError as exc:
            raise DeviceIOError(f"Error removing device {self.uuid}") from exc
        self.active = False

    def write_config(self) -> None:
        path = self.persist_path()
        if path is None:
            raise MissingParentError(f"Device {self.uuid} must have a defined parent")
        self.require_type()
        content = json.dumps(self.to_json(include_uuid=False), indent=2)
        try:
            LOGGER.debug("Ensuring parent directory %s exists", path.parent)
            path.parent.mkdir(parents=True, exist_ok=True)
            LOGGER.debug("Writing config for %s to %s", self.uuid, path)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{self.uuid}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.chmod(tmp_name, 0o644)
                os.replace(tmp_name, path)
            except OSError:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise DeviceIOError(f"Failed to write config for device {self.uuid}") from exc

    def define(self) -> None:
        self.write_config()

    def undefine(self) -> None:
        path = self.persist_path()
        if path is None:
            raise MissingParentError(f"Failed to undefine {self.uuid}: no parent")
        try:
            path.unlink()
        except OSError as exc:
            raise DeviceIOError(f"Failed to undefine {self.uuid}") from exc

    def add_attribute(self, name: str, value: str, index: int | None = None) -> None:
        if index is None:
            self.attrs.append((name, value))
            return
        if index < 0 or index > len(self.attrs):
            raise AttributeIndexError(index, self.attrs)
        self.attrs.insert(index, (name, value))

    def delete_attribute(self, index: int | None = None) -> None:
        if index is None:
            if self.attrs:
                self.attrs.pop()
            return
        if index < 0 or index >= len(self.attrs):
            raise AttributeIndexError(index, self.attrs)
        del self.attrs[index]

    def add_attributes(self, attrs: list[tuple[str, str]]) -> None:
        self.attrs.extend(attrs)
