from __future__ import annotations

import pytest

from conftest import PARENT, TYPE, UUID_A, ScratchEnvironment
from mdevctl.api import Client, DeviceNotFoundError, MdevctlError


def test_public_client_define_and_edit(env: ScratchEnvironment) -> None:
    client = Client(env=env)

    dev = client.define(uuid=UUID_A, parent=PARENT, mdev_type=TYPE)
    assert dev.uuid == UUID_A

    client.add_attribute(UUID_A, "assign_adapter", "5")
    client.add_attribute(UUID_A, "assign_domain", "6", index=0)
    client.set_autostart(UUID_A, True)

    stored = client.get_defined_device(UUID_A)
    assert stored.autostart
    assert stored.attrs == [("assign_domain", "6"), ("assign_adapter", "5")]

    client.delete_attribute(UUID_A)
    assert client.get_defined_device(UUID_A, parent=PARENT).attrs == [("assign_domain", "6")]

    client.undefine(UUID_A)
    assert client.defined_devices() == {}


def test_public_client_start_stop(env: ScratchEnvironment) -> None:
    supported = env.add_parent()
    client = Client(env=env)

    dev = client.start(parent=PARENT, mdev_type=TYPE)
    assert (supported / TYPE / "create").read_text() == str(dev.uuid)
    assert [t.typename for t in client.supported_types()[PARENT]] == [TYPE]

    device_dir = env.add_active(UUID_A)
    assert client.get_active_device(UUID_A).parent == PARENT
    client.stop(UUID_A)
    assert (device_dir / "remove").read_text() == "1"


def test_public_errors_share_a_base(env: ScratchEnvironment) -> None:
    client = Client(env=env)
    with pytest.raises(DeviceNotFoundError):
        client.get_defined_device(UUID_A)
    assert issubclass(DeviceNotFoundError, MdevctlError)
