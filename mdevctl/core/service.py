"""Command layer shared by the CLI and the public API."""

from __future__ import annotations

import json
import logging
import uuid as uuidlib
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from uuid import UUID

from mdevctl.core.callouts import Callout, CalloutRegistry
from mdevctl.core.environment import DefaultEnvironment, Environment
from mdevctl.core.errors import (
    AlreadyDefinedError,
    AmbiguousDeviceError,
    ConflictingParentOrTypeError,
    DefinitionError,
    DeviceIOError,
    DeviceNotFoundError,
    InvalidRequestError,
    MdevctlError,
    MissingParentError,
    MissingTypeError,
)
from mdevctl.core.mdev import MDev
from mdevctl.core.model import Action, MDevType

LOGGER = logging.getLogger(__name__)

DeviceMap = dict[str, list[MDev]]


def _parse_uuid(name: str) -> UUID | None:
    try:
        return UUID(name)
    except ValueError:
        return None


def _read_jsonfile(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DeviceIOError(f"Unable to read jsonfile {path}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise DefinitionError(f"Invalid JSON in {path}: {exc}") from exc


def error_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield `exc` followed by each exception it was raised from."""
    current: BaseException | None = exc
    while current is not None:
        yield current
        current = current.__cause__


def format_json(devices: DeviceMap) -> str:
    parents = {
        parent: [child.to_json(include_uuid=True) for child in children]
        for parent, children in devices.items()
    }
    # an empty listing is an empty array, not an array holding an empty object
    return json.dumps([parents] if parents else [], indent=2)


class MdevctlService:
    def __init__(
        self,
        env: Environment | None = None,
        *,
        registry: CalloutRegistry | None = None,
    ) -> None:
        self.env = env or DefaultEnvironment()
        LOGGER.debug("%r", self.env)
        self.env.self_check()
        self.registry = registry or CalloutRegistry(self.env)

    def callout(self, dev: MDev) -> Callout:
        return Callout(dev, self.registry)

    # lookups

    def defined_devices(self, uuid: UUID | None = None, parent: str | None = None) -> DeviceMap:
        """Persisted definitions, optionally filtered, merged with live state."""
        LOGGER.debug("Looking up defined mdevs: uuid=%s, parent=%s", uuid, parent)
        devices: DeviceMap = {}
        base = self.env.persist_base()
        if not base.is_dir():
            return devices

        for parent_path in sorted(base.iterdir(), key=lambda p: p.name):
            if parent_path == self.env.old_scripts_base() or not parent_path.is_dir():
                continue
            if parent is not None and parent_path.name != parent:
                LOGGER.debug("Ignoring child devices for parent %s", parent_path.name)
                continue

            children: list[MDev] = []
            for child in sorted(parent_path.iterdir(), key=lambda p: p.name):
                if not child.is_file():
                    continue
                child_uuid = _parse_uuid(child.name)
                if child_uuid is None:
                    LOGGER.warning("Can't determine uuid for file '%s'", child.name)
                    continue
                if uuid is not None and child_uuid != uuid:
                    continue

                LOGGER.debug("found mdev %s", child_uuid)
                dev = MDev(self.env, child_uuid)
                dev.parent = parent_path.name
                dev.load_definition()
                dev.load_from_sysfs(strict=False)
                children.append(dev)

            if children:
                devices[parent_path.name] = children
        return devices

    def active_devices(self, uuid: UUID | None = None, parent: str | None = None) -> DeviceMap:
        """Running devices, with autostart and attributes filled in where known."""
        LOGGER.debug("Looking up active mdevs: uuid=%s, parent=%s", uuid, parent)
        devices: DeviceMap = {}
        base = self.env.mdev_base()
        if not base.is_dir():
            return devices

        for entry in sorted(base.iterdir(), key=lambda p: p.name):
            dev_uuid = _parse_uuid(entry.name)
            if dev_uuid is None:
                LOGGER.warning("Can't determine uuid for file '%s'", entry.name)
                continue
            if uuid is not None and dev_uuid != uuid:
                continue

            dev = MDev(self.env, dev_uuid)
            snapshot = dev.load_from_sysfs()
            if not snapshot.active or dev.parent is None:
                LOGGER.debug("Ignoring device %s without a resolvable parent", dev_uuid)
                continue
            if parent is not None and dev.parent != parent:
                LOGGER.debug(
                    "Ignoring device %s because it doesn't match parent %s", dev_uuid, parent
                )
                continue

            persisted = MDev(self.env, dev_uuid, parent=dev.parent)
            if persisted.is_defined():
                try:
                    persisted.load_definition()
                    dev.autostart = persisted.autostart
                except MdevctlError as exc:
                    LOGGER.debug("Unable to load definition for %s: %s", dev_uuid, exc)

            try:
                dev.add_attributes(self.callout(dev).get_attributes())
            except MdevctlError as exc:
                LOGGER.debug("Unable to get attributes for %s: %s", dev_uuid, exc)

            devices.setdefault(dev.parent, []).append(dev)
        return dict(sorted(devices.items()))

    def get_defined_device(self, uuid: UUID, parent: str | None = None) -> MDev:
        devices = self.defined_devices(uuid, parent)
        matches = [dev for children in devices.values() for dev in children]
        where = f"{parent}/{uuid}" if parent else str(uuid)
        if not matches:
            raise DeviceNotFoundError(f"Mediated device {where} is not defined")
        if len(matches) > 1:
            hint = "" if parent else ", specify a parent"
            raise AmbiguousDeviceError(f"Multiple definitions found for {where}{hint}")
        return matches[0]

    def get_active_device(self, uuid: UUID, parent: str | None = None) -> MDev:
        devices = self.active_devices(uuid, parent)
        matches = [dev for children in devices.values() for dev in children]
        if not matches:
            where = f"{parent}/{uuid}" if parent else str(uuid)
            raise DeviceNotFoundError(f"Mediated device {where} is not active")
        if len(matches) > 1:
            raise AmbiguousDeviceError(f"Multiple parents found for {uuid}. System error?")
        return matches[0]

    def supported_types(self, parent: str | None = None) -> dict[str, list[MDevType]]:
        LOGGER.debug("Finding supported mdev types")
        types: dict[str, list[MDevType]] = {}
        base = self.env.parent_base()
        if not base.is_dir():
            return types

        for parent_path in sorted(base.iterdir(), key=lambda p: p.name):
            if parent is not None and parent_path.name != parent:
                LOGGER.debug("Ignoring types for parent %s", parent_path.name)
                continue
            types_dir = parent_path / "mdev_supported_types"
            if not types_dir.is_dir():
                LOGGER.debug("Parent %s does not advertise mdev types", parent_path.name)
                continue

            children: list[MDevType] = []
            for type_path in sorted(types_dir.iterdir(), key=lambda p: p.name):
                if not type_path.is_dir():
                    continue
                LOGGER.debug("found mdev type %s", type_path.name)
                children.append(_read_mdev_type(parent_path.name, type_path))
            types[parent_path.name] = children
        return types

    # commands

    def define(
        self,
        uuid: UUID | None = None,
        *,
        auto: bool = False,
        parent: str | None = None,
        mdev_type: str | None = None,
        jsonfile: Path | None = None,
        force: bool = False,
    ) -> MDev:
        """Persist a definition, seeding attributes from the running device if there is one."""
        LOGGER.debug("Defining mdev %s", uuid)
        if uuid is None and parent is None:
            raise InvalidRequestError("Either a UUID or a parent must be given")
        dev = MDev(self.env, uuid or uuidlib.uuid4())

        if jsonfile is not None:
            if mdev_type is not None:
                raise InvalidRequestError(f"Device type cannot be specified separately from {jsonfile}")
            if auto:
                raise InvalidRequestError(f"Start policy cannot be specified separately from {jsonfile}")
            if parent is None:
                raise MissingParentError(f"Parent device required to define device via {jsonfile}")
            if self.defined_devices(dev.uuid, parent):
                raise AlreadyDefinedError(
                    f"Cowardly refusing to overwrite existing config for {parent}/{dev.uuid}"
                )
            dev.load_from_json(parent, _read_jsonfile(jsonfile), source=str(jsonfile))
        else:
            if uuid is not None:
                dev.load_from_sysfs()
                if parent is None and (not dev.active or mdev_type is not None):
                    raise MissingParentError("No parent specified")
            dev.autostart = auto
            dev.override(parent=parent, mdev_type=mdev_type)
            if dev.parent is None:
                raise MissingParentError("No parent specified")
            if dev.mdev_type is None:
                raise MissingTypeError("No type specified")
            if dev.is_defined():
                raise AlreadyDefinedError(f"Device {dev.uuid} on {dev.parent} already defined")

        def mutation(d: MDev) -> None:
            if d.active:
                d.add_attributes(self.callout(d).get_attributes())
            d.define()

        self.callout(dev).invoke(Action.DEFINE, force, mutation)
        return dev

    def undefine(self, uuid: UUID, parent: str | None = None, *, force: bool = False) -> None:
        LOGGER.debug("Undefining mdev %s", uuid)
        devices = self.defined_devices(uuid, parent)
        if not devices:
            raise DeviceNotFoundError("No devices match the specified uuid")

        failed = False
        for children in devices.values():
            for dev in children:
                try:
                    self.callout(dev).invoke(Action.UNDEFINE, force, lambda d: d.undefine())
                except MdevctlError as exc:
                    failed = True
                    for err in error_chain(exc):
                        LOGGER.warning(
                            "Undefine of %s on parent %s failed with error: %s",
                            dev.uuid,
                            dev.parent,
                            err,
                        )
        if failed:
            raise MdevctlError("Undefine failed")

    def _dev_from_jsonfile(self, uuid: UUID, parent: str, jsonfile: Path) -> MDev:
        dev = MDev(self.env, uuid)
        dev.load_from_json(parent, _read_jsonfile(jsonfile), source=str(jsonfile))
        return dev

    def modify(
        self,
        uuid: UUID,
        *,
        parent: str | None = None,
        mdev_type: str | None = None,
        addattr: str | None = None,
        delattr: bool = False,
        index: int | None = None,
        value: str | None = None,
        auto: bool = False,
        manual: bool = False,
        live: bool = False,
        defined: bool = False,
        jsonfile: Path | None = None,
        force: bool = False,
    ) -> MDev:
        """Change a definition, the running device, or both.

        Without `live` only the persisted definition is rewritten. With `live`
        the new configuration comes from `jsonfile` and is handed to a
        versioned callout script for the running device; adding `defined`
        also rewrites the definition afterwards.
        """
        LOGGER.debug("Modifying mdev %s", uuid)
        if auto and manual:
            raise InvalidRequestError("'auto' and 'manual' are mutually exclusive")
        if addattr is not None and delattr:
            raise InvalidRequestError("'addattr' and 'delattr' are mutually exclusive")
        if defined and not live:
            raise InvalidRequestError("'defined' option must be used with 'live' option")

        if live:
            if mdev_type is not None:
                raise InvalidRequestError("'type' cannot be changed on active mdev")
            if auto:
                raise InvalidRequestError("'auto' cannot be changed on active mdev")
            if manual:
                raise InvalidRequestError("'manual' cannot be changed on active mdev")
            if jsonfile is None:
                raise InvalidRequestError("'live' option must be used with 'jsonfile' option")
            if addattr is not None or delattr or index is not None or value is not None:
                raise InvalidRequestError("Attributes cannot be edited together with a jsonfile")

            active = self.get_active_device(uuid, parent)
            dev = self._dev_from_jsonfile(uuid, active.require_parent(), jsonfile)
            if dev.mdev_type != active.mdev_type:
                raise InvalidRequestError("'type' cannot be changed on active mdev")
            dev.active = True

            if defined:
                stored = self.get_defined_device(uuid, dev.parent)
                if stored.mdev_type != dev.mdev_type:
                    raise ConflictingParentOrTypeError("'type' of active and defined mdev does not match")
                callout = self.callout(dev)
                LOGGER.debug("mdev device used for live update: %s", dev)
                callout.invoke_modify_live()
                callout.invoke(Action.MODIFY, force, lambda d: d.write_config())
                return dev

            self.callout(dev).invoke_modify_live()
            return dev

        if jsonfile is not None:
            if mdev_type is not None or auto or manual:
                raise InvalidRequestError(f"Device details cannot be specified separately from {jsonfile}")
            if addattr is not None or delattr or index is not None or value is not None:
                raise InvalidRequestError("Attributes cannot be edited together with a jsonfile")
            if parent is None:
                raise MissingParentError("Parent device required to modify device via json file")
            if not self.defined_devices(uuid, parent):
                raise DeviceNotFoundError(f"Mediated device {parent}/{uuid} is not defined")
            dev = self._dev_from_jsonfile(uuid, parent, jsonfile)
        else:
            dev = self.get_defined_device(uuid, parent)
            if mdev_type is not None:
                dev.override(mdev_type=mdev_type)
            if auto:
                dev.autostart = True
            elif manual:
                dev.autostart = False

        if addattr is not None:
            if value is None:
                raise InvalidRequestError("No attribute value provided")
            dev.add_attribute(addattr, value, index)
        elif delattr:
            dev.delete_attribute(index)

        self.callout(dev).invoke(Action.MODIFY, force, lambda d: d.write_config())
        return dev

    def _start_target(
        self,
        uuid: UUID | None,
        parent: str | None,
        mdev_type: str | None,
        jsonfile: Path | None,
    ) -> MDev:
        if uuid is None and parent is None:
            raise InvalidRequestError("Either a UUID or a parent must be given")

        if jsonfile is not None:
            if mdev_type is not None:
                raise InvalidRequestError("Device type cannot be specified separately from json file")
            if parent is None:
                raise MissingParentError("Parent device required to start device via json file")
            return self._dev_from_jsonfile(uuid or uuidlib.uuid4(), parent, jsonfile)

        dev: MDev | None = None
        if uuid is not None:
            # a bare uuid may refer to a defined device
            devices = self.defined_devices(uuid, parent)
            matches = [d for children in devices.values() for d in children]
            if len(matches) > 1:
                raise AmbiguousDeviceError(
                    f"Multiple definitions found for device {uuid}. Please specify a parent."
                )
            if matches:
                dev = matches[0]
                if mdev_type is not None and mdev_type != dev.mdev_type:
                    raise ConflictingParentOrTypeError(
                        f"Device {dev.uuid} already exists on parent {dev.parent} "
                        f"with type {dev.mdev_type}"
                    )

        if dev is None:
            dev = MDev(self.env, uuid or uuidlib.uuid4(), parent=parent, mdev_type=mdev_type)
        if dev.mdev_type is not None and dev.parent is None:
            raise MissingParentError("can't provide type without parent")
        if dev.mdev_type is None or dev.parent is None:
            raise InvalidRequestError("Device is insufficiently specified")
        return dev

    def start(
        self,
        uuid: UUID | None = None,
        *,
        parent: str | None = None,
        mdev_type: str | None = None,
        jsonfile: Path | None = None,
        force: bool = False,
    ) -> MDev:
        LOGGER.debug("Starting device %s", uuid)
        dev = self._start_target(uuid, parent, mdev_type, jsonfile)
        self.callout(dev).invoke(Action.START, force, lambda d: d.start())
        return dev

    def stop(self, uuid: UUID, *, force: bool = False) -> MDev:
        LOGGER.debug("Stopping %s", uuid)
        dev = MDev(self.env, uuid)
        snapshot = dev.load_from_sysfs()
        if not snapshot.active or dev.parent is None:
            raise MissingParentError(f"Device {uuid} is not an active mdev")
        self.callout(dev).invoke(Action.STOP, force, lambda d: d.stop())
        return dev

    def list_devices(
        self,
        *,
        defined: bool = False,
        dumpjson: bool = False,
        verbose: bool = False,
        uuid: UUID | None = None,
        parent: str | None = None,
    ) -> str:
        if defined:
            devices = self.defined_devices(uuid, parent)
        else:
            devices = self.active_devices(uuid, parent)
        for children in devices.values():
            children.sort(key=lambda d: d.uuid)

        if dumpjson:
            count = sum(len(children) for children in devices.values())
            # a single device is printed in the shape of its definition file
            if uuid is None or count > 1:
                return format_json(devices)
            if count == 0:
                return json.dumps([], indent=2)
            dev = next(iter(devices.values()))[0]
            return json.dumps(dev.to_json(include_uuid=False), indent=2)

        return "".join(
            dev.to_text(defined=defined, verbose=verbose)
            for children in devices.values()
            for dev in children
        )

    def types(self, parent: str | None = None, *, dumpjson: bool = False) -> str:
        types = self.supported_types(parent)
        if dumpjson:
            parents = {
                name: [t.to_json() for t in children] for name, children in types.items()
            }
            return json.dumps([parents] if parents else [], indent=2)

        lines: list[str] = []
        for name, children in types.items():
            lines.append(name)
            for t in children:
                lines.append(f"  {t.typename}")
                lines.append(f"    Available instances: {t.available_instances}")
                lines.append(f"    Device API: {t.device_api}")
                if t.name:
                    lines.append(f"    Name: {t.name}")
                if t.description:
                    lines.append(f"    Description: {t.description}")
        return "".join(f"{line}\n" for line in lines)

    def start_parent_mdevs(self, parent: str) -> list[MDev]:
        """Start every `auto` definition of `parent`; failures are only logged."""
        started: list[MDev] = []
        for children in self.defined_devices(parent=parent).values():
            for dev in children:
                if not dev.autostart:
                    continue
                LOGGER.debug("Autostarting %s", dev.uuid)
                try:
                    self.callout(dev).invoke(Action.START, False, lambda d: d.start())
                except MdevctlError as exc:
                    for err in error_chain(exc):
                        LOGGER.warning("%s", err)
                    continue
                started.append(dev)
        return started


def _read_mdev_type(parent: str, path: Path) -> MDevType:
    def read(name: str) -> str:
        try:
            return (path / name).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise DeviceIOError(f"Unable to read {path / name}") from exc

    try:
        available = int(read("available_instances"))
    except ValueError as exc:
        raise DeviceIOError(f"Invalid available_instances for type {path.name}") from exc

    name = read("name") if (path / "name").exists() else ""
    description = ""
    if (path / "description").exists():
        description = read("description").replace("\n", ", ")
    return MDevType(
        parent=parent,
        typename=path.name,
        available_instances=available,
        device_api=read("device_api"),
        name=name,
        description=description,
    )
