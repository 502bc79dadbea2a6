from __future__ import annotations

import json
import stat

import pytest

from conftest import OTHER_PARENT, OTHER_TYPE, PARENT, TYPE, UUID_A, ScratchEnvironment
from mdevctl.core import mdev as mdev_module
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
from mdevctl.core.mdev import MDev, read_sysfs_snapshot


def _dev(env: ScratchEnvironment, **kwargs) -> MDev:
    return MDev(env, UUID_A, parent=PARENT, mdev_type=TYPE, **kwargs)


def test_add_attribute_inserts_at_index(env: ScratchEnvironment) -> None:
    dev = _dev(env, attrs=[("a", "1"), ("b", "2"), ("c", "3")])
    dev.add_attribute("x", "v", 1)
    assert dev.attrs == [("a", "1"), ("x", "v"), ("b", "2"), ("c", "3")]

    dev.add_attribute("y", "w")
    assert dev.attrs[-1] == ("y", "w")

    dev.add_attribute("z", "end", len(dev.attrs))
    assert dev.attrs[-1] == ("z", "end")


def test_add_attribute_rejects_index_past_end(env: ScratchEnvironment) -> None:
    dev = _dev(env, attrs=[("a", "1"), ("b", "2"), ("c", "3")])
    with pytest.raises(AttributeIndexError) as excinfo:
        dev.add_attribute("x", "v", 5)
    assert "Current attributes" in str(excinfo.value)
    assert len(dev.attrs) == 3


def test_delete_attribute(env: ScratchEnvironment) -> None:
    dev = _dev(env, attrs=[("a", "1"), ("b", "2"), ("c", "3")])
    dev.delete_attribute()
    assert dev.attrs == [("a", "1"), ("b", "2")]

    dev.delete_attribute(0)
    assert dev.attrs == [("b", "2")]

    with pytest.raises(AttributeIndexError):
        dev.delete_attribute(99)


def test_delete_attribute_on_empty_list(env: ScratchEnvironment) -> None:
    dev = _dev(env)
    dev.delete_attribute()
    assert dev.attrs == []

    with pytest.raises(AttributeIndexError) as excinfo:
        dev.delete_attribute(0)
    assert "no attributes" in str(excinfo.value)


def test_snapshot_of_missing_device_is_inactive(env: ScratchEnvironment) -> None:
    snapshot = read_sysfs_snapshot(env, UUID_A)
    assert not snapshot.active
    assert snapshot.parent is None
    assert snapshot.mdev_type is None


def test_snapshot_of_active_device(env: ScratchEnvironment) -> None:
    env.add_active(UUID_A)
    snapshot = read_sysfs_snapshot(env, UUID_A)
    assert snapshot.active
    assert snapshot.parent == PARENT
    assert snapshot.mdev_type == TYPE


def test_snapshot_with_broken_type_link(env: ScratchEnvironment) -> None:
    env.add_active(UUID_A, broken_type=True)
    snapshot = read_sysfs_snapshot(env, UUID_A)
    assert snapshot.active
    assert snapshot.parent == PARENT
    assert snapshot.mdev_type is None


def test_load_from_sysfs_fills_unknowns(env: ScratchEnvironment) -> None:
    env.add_active(UUID_A)
    dev = MDev(env, UUID_A)
    dev.load_from_sysfs()
    assert dev.active
    assert (dev.parent, dev.mdev_type) == (PARENT, TYPE)
    assert dev.attrs == []
    assert not dev.autostart


def test_load_from_sysfs_conflict(env: ScratchEnvironment) -> None:
    env.add_active(UUID_A, mdev_type=OTHER_TYPE)

    with pytest.raises(ConflictingParentOrTypeError):
        _dev(env).load_from_sysfs()

    dev = _dev(env)
    dev.load_from_sysfs(strict=False)
    assert not dev.active
    assert dev.mdev_type == TYPE


def test_override_type_of_active_device_is_rejected(env: ScratchEnvironment) -> None:
    env.add_active(UUID_A)
    dev = MDev(env, UUID_A)
    dev.load_from_sysfs()
    with pytest.raises(ConflictingParentOrTypeError):
        dev.override(mdev_type=OTHER_TYPE)


def test_override_parent_detaches_from_live_device(env: ScratchEnvironment, caplog) -> None:
    env.add_active(UUID_A)
    dev = MDev(env, UUID_A)
    dev.load_from_sysfs()
    dev.override(parent=OTHER_PARENT, mdev_type=OTHER_TYPE)
    assert not dev.active
    assert (dev.parent, dev.mdev_type) == (OTHER_PARENT, OTHER_TYPE)
    assert "Overwriting parent" in caplog.text


def test_load_from_json_validates(env: ScratchEnvironment) -> None:
    dev = MDev(env, UUID_A)
    dev.load_from_json(PARENT, {"mdev_type": TYPE, "start": "auto", "attrs": [{"a": "1"}, {"b": "2"}]})
    assert dev.autostart
    assert dev.attrs == [("a", "1"), ("b", "2")]

    with pytest.raises(DefinitionError):
        MDev(env, UUID_A).load_from_json(PARENT, {"mdev_type": TYPE, "start": "sometimes"})
    with pytest.raises(DefinitionError):
        MDev(env, UUID_A).load_from_json(PARENT, {"start": "auto"})


def test_write_config_and_load_definition(env: ScratchEnvironment) -> None:
    dev = _dev(env, autostart=True, attrs=[("a", "1"), ("b", "2")])
    dev.define()

    doc = env.definition(UUID_A)
    assert doc == {"mdev_type": TYPE, "start": "auto", "attrs": [{"a": "1"}, {"b": "2"}]}
    assert str(UUID_A) not in json.dumps(doc)

    mode = (env.persist_base() / PARENT / str(UUID_A)).stat().st_mode
    assert stat.S_IMODE(mode) == 0o644

    loaded = MDev(env, UUID_A, parent=PARENT)
    loaded.load_definition()
    assert loaded.autostart
    assert loaded.attrs == dev.attrs


def test_undefine_removes_definition(env: ScratchEnvironment) -> None:
    env.add_defined(UUID_A)
    dev = _dev(env)
    dev.undefine()
    assert not dev.is_defined()

    with pytest.raises(DeviceIOError):
        dev.undefine()


def test_create_requires_parent_and_type(env: ScratchEnvironment) -> None:
    with pytest.raises(MissingParentError):
        MDev(env, UUID_A, mdev_type=TYPE).create()
    with pytest.raises(MissingTypeError):
        MDev(env, UUID_A, parent=PARENT).create()


def test_create_checks_parent_support(env: ScratchEnvironment) -> None:
    with pytest.raises(ParentNotRegisteredError):
        _dev(env).create()

    env.add_parent(types={OTHER_TYPE: 1})
    with pytest.raises(UnsupportedTypeError):
        _dev(env).create()

    env.add_parent(types={TYPE: 0})
    with pytest.raises(NoAvailableInstancesError):
        _dev(env).create()


def test_create_writes_uuid(env: ScratchEnvironment) -> None:
    supported = env.add_parent()
    dev = _dev(env)
    dev.create()
    assert dev.active
    assert (supported / TYPE / "create").read_text() == str(UUID_A)


def test_create_existing_device(env: ScratchEnvironment) -> None:
    env.add_active(UUID_A)
    with pytest.raises(AlreadyExistsError):
        _dev(env).create()
    with pytest.raises(ConflictingParentOrTypeError):
        MDev(env, UUID_A, parent=PARENT, mdev_type=OTHER_TYPE).create()
    with pytest.raises(ConflictingParentOrTypeError):
        MDev(env, UUID_A, parent=OTHER_PARENT, mdev_type=TYPE).create()


def test_start_applies_attributes_in_order(env: ScratchEnvironment, monkeypatch) -> None:
    env.add_parent()
    written: list[tuple[str, str]] = []
    monkeypatch.setattr(
        mdev_module,
        "write_attribute",
        lambda basepath, attr, value: written.append((attr, value)),
    )

    dev = _dev(env, attrs=[("a", "1"), ("b", "2")])
    dev.start()
    assert written == [("a", "1"), ("b", "2")]


def test_start_rolls_back_on_attribute_failure(env: ScratchEnvironment, monkeypatch) -> None:
    env.add_parent()
    written: list[str] = []
    stopped: list[bool] = []

    def fake_write(basepath, attr, value):
        if attr == "b":
            raise DeviceIOError(f"Invalid attribute '{attr}'")
        written.append(attr)

    def fake_stop(self):
        stopped.append(True)
        raise DeviceIOError("remove failed")

    monkeypatch.setattr(mdev_module, "write_attribute", fake_write)
    monkeypatch.setattr(MDev, "stop", fake_stop)

    dev = _dev(env, attrs=[("a", "1"), ("b", "2"), ("c", "3")])
    with pytest.raises(DeviceIOError, match="Invalid attribute 'b'"):
        dev.start()
    assert written == ["a"]
    assert stopped == [True]


def test_write_attribute_requires_existing_file(env: ScratchEnvironment) -> None:
    device_dir = env.add_active(UUID_A, attrs=("weight",))
    mdev_module.write_attribute(device_dir, "weight", "5")
    assert (device_dir / "weight").read_text() == "5"
    with pytest.raises(DeviceIOError, match="Invalid attribute"):
        mdev_module.write_attribute(device_dir, "missing", "1")


def test_stop_writes_remove(env: ScratchEnvironment) -> None:
    device_dir = env.add_active(UUID_A)
    dev = MDev(env, UUID_A)
    dev.load_from_sysfs()
    dev.stop()
    assert not dev.active
    assert (device_dir / "remove").read_text() == "1"


def test_to_text(env: ScratchEnvironment) -> None:
    env.add_defined(UUID_A)
    dev = _dev(env, active=True, attrs=[("a", "1")])
    assert dev.to_text(defined=True) == f"{UUID_A} {PARENT} {TYPE} manual (active)\n"
    assert dev.to_text(defined=False, verbose=True) == (
        f"{UUID_A} {PARENT} {TYPE} manual (defined)\n"
        "  Attrs:\n"
        '    @{0}: {"a":"1"}\n'
    )
