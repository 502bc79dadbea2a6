"""Entry points for programs that manage mediated devices without the CLI.

`Client` runs the same define/start/stop/modify commands as `mdevctl`, callouts
included. The errors and models re-exported here are the ones callers can
catch and inspect; anything under `mdevctl.core` may change between releases.
"""

from __future__ import annotations

from pathlib import Path
from uuid import UUID

from mdevctl.core.callouts import CalloutRegistry
from mdevctl.core.environment import DefaultEnvironment, Environment
from mdevctl.core.errors import (
    AlreadyDefinedError,
    AlreadyExistsError,
    AmbiguousDeviceError,
    AttributeIndexError,
    CalloutError,
    CalloutFailedError,
    CalloutSpawnError,
    ConflictingParentOrTypeError,
    DefinitionError,
    DeviceIOError,
    DeviceNotFoundError,
    EnvironmentCheckError,
    InvalidRequestError,
    MalformedAttributeJSONError,
    MalformedCapabilityResponseError,
    MdevctlError,
    MissingParentError,
    MissingTypeError,
    NoAvailableInstancesError,
    ParentNotRegisteredError,
    UnsupportedTypeError,
)
from mdevctl.core.mdev import MDev
from mdevctl.core.model import Action, Event, MDevType, State
from mdevctl.core.service import MdevctlService

__all__ = [
    "MdevctlError",
    "AlreadyDefinedError",
    "AlreadyExistsError",
    "AmbiguousDeviceError",
    "AttributeIndexError",
    "CalloutError",
    "CalloutFailedError",
    "CalloutSpawnError",
    "ConflictingParentOrTypeError",
    "DefinitionError",
    "DeviceIOError",
    "DeviceNotFoundError",
    "EnvironmentCheckError",
    "InvalidRequestError",
    "MalformedAttributeJSONError",
    "MalformedCapabilityResponseError",
    "MissingParentError",
    "MissingTypeError",
    "NoAvailableInstancesError",
    "ParentNotRegisteredError",
    "UnsupportedTypeError",
    "Action",
    "Event",
    "State",
    "MDev",
    "MDevType",
    "Environment",
    "DefaultEnvironment",
    "Client",
]


class Client:
    """Public client for managing mediated devices.

    A `Client` wraps definition lookup, live device reconciliation and the
    callout protocol behind a stable API intended for third-party tools. All
    filesystem access is relative to the environment's root, so a client can
    be pointed at a scratch tree.
    """

    def __init__(self, *, env: Environment | None = None) -> None:
        env = env or DefaultEnvironment()
        self._service = MdevctlService(env, registry=CalloutRegistry(env))

    @property
    def env(self) -> Environment:
        return self._service.env

    def defined_devices(
        self, *, uuid: UUID | None = None, parent: str | None = None
    ) -> dict[str, list[MDev]]:
        return self._service.defined_devices(uuid, parent)

    def active_devices(
        self, *, uuid: UUID | None = None, parent: str | None = None
    ) -> dict[str, list[MDev]]:
        return self._service.active_devices(uuid, parent)

    def get_defined_device(self, uuid: UUID, *, parent: str | None = None) -> MDev:
        return self._service.get_defined_device(uuid, parent)

    def get_active_device(self, uuid: UUID, *, parent: str | None = None) -> MDev:
        return self._service.get_active_device(uuid, parent)

    def supported_types(self, *, parent: str | None = None) -> dict[str, list[MDevType]]:
        return self._service.supported_types(parent)

    def define(
        self,
        *,
        uuid: UUID | None = None,
        parent: str | None = None,
        mdev_type: str | None = None,
        auto: bool = False,
        jsonfile: Path | None = None,
        force: bool = False,
    ) -> MDev:
        return self._service.define(
            uuid,
            auto=auto,
            parent=parent,
            mdev_type=mdev_type,
            jsonfile=jsonfile,
            force=force,
        )

    def undefine(self, uuid: UUID, *, parent: str | None = None, force: bool = False) -> None:
        self._service.undefine(uuid, parent, force=force)

    def start(
        self,
        *,
        uuid: UUID | None = None,
        parent: str | None = None,
        mdev_type: str | None = None,
        jsonfile: Path | None = None,
        force: bool = False,
    ) -> MDev:
        return self._service.start(
            uuid,
            parent=parent,
            mdev_type=mdev_type,
            jsonfile=jsonfile,
            force=force,
        )

    def stop(self, uuid: UUID, *, force: bool = False) -> MDev:
        return self._service.stop(uuid, force=force)

    def add_attribute(
        self,
        uuid: UUID,
        name: str,
        value: str,
        *,
        parent: str | None = None,
        index: int | None = None,
        force: bool = False,
    ) -> MDev:
        return self._service.modify(
            uuid,
            parent=parent,
            addattr=name,
            value=value,
            index=index,
            force=force,
        )

    def delete_attribute(
        self,
        uuid: UUID,
        *,
        parent: str | None = None,
        index: int | None = None,
        force: bool = False,
    ) -> MDev:
        return self._service.modify(uuid, parent=parent, delattr=True, index=index, force=force)

    def set_autostart(
        self, uuid: UUID, autostart: bool, *, parent: str | None = None, force: bool = False
    ) -> MDev:
        return self._service.modify(
            uuid,
            parent=parent,
            auto=autostart,
            manual=not autostart,
            force=force,
        )
