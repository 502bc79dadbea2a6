"""Callout script discovery and the pre/post/notify/get protocol.

Callout scripts are site-supplied executables consulted around every lifecycle
operation. They are invoked as::

    <script> -t <type> -e <event> -a <action> -s <state> -u <uuid> -p <parent>

with the device's JSON configuration on stdin (except for `get` events). Exit
status 0 approves, 2 means "not my device, keep looking", anything else
rejects. Scripts in the current scripts directory shadow those in the legacy
one; within a directory, file name order decides.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from mdevctl.core.errors import (
    CalloutError,
    CalloutFailedError,
    CalloutSpawnError,
    DeviceNotFoundError,
    MalformedAttributeJSONError,
    MalformedCapabilityResponseError,
)
from mdevctl.core.environment import Environment
from mdevctl.core.mdev import MDev, parse_attribute_list, read_sysfs_snapshot
from mdevctl.core.model import (
    PROVIDED_PROFILE,
    Action,
    CalloutScript,
    CapabilityProfile,
    Event,
    ScriptResult,
    ScriptTier,
    State,
    Verdict,
)
from mdevctl.core.schema import ATTRIBUTES_SCHEMA, CAPABILITIES_SCHEMA, validate

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_EMPTY_ATTRIBUTES = "[{}]"


def run_script(
    script: Path,
    dev: MDev,
    event: Event,
    action: Action,
    state: State,
    stdin: str,
) -> ScriptResult:
    """Run one callout script and wait for it; there is no timeout."""
    mdev_type = dev.require_type()
    parent = dev.require_parent()
    LOGGER.debug(
        "%s-%s: executing %s (mdev_type=%s, uuid=%s, parent=%s, state=%s)",
        event,
        action,
        script,
        mdev_type,
        dev.uuid,
        parent,
        state,
    )
    cmd = [
        str(script),
        "-t", mdev_type,
        "-e", str(event),
        "-a", str(action),
        "-s", str(state),
        "-u", str(dev.uuid),
        "-p", parent,
    ]
    try:
        proc = subprocess.run(
            cmd,
            input=stdin,
            check=False,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise CalloutSpawnError(script, str(exc)) from exc

    # a negative return code means the child was killed by that signal
    returncode = proc.returncode if proc.returncode >= 0 else None
    return ScriptResult(
        script=script,
        returncode=returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )


def _parse_capabilities(result: ScriptResult) -> CapabilityProfile:
    try:
        doc = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise MalformedCapabilityResponseError(
            f"Invalid JSON received from callout script {result.script}"
        ) from exc
    validate(
        doc,
        CAPABILITIES_SCHEMA,
        error_cls=MalformedCapabilityResponseError,
        source=str(result.script),
    )
    supports = doc["supports"]

    actions: set[Action] = set()
    for name in supports["actions"]:
        try:
            actions.add(Action(name))
        except ValueError:
            LOGGER.warning("Callout script %s provides unknown action '%s'", result.script, name)
    events: set[Event] = set()
    for name in supports["events"]:
        try:
            events.add(Event(name))
        except ValueError:
            LOGGER.warning("Callout script %s provides unknown event '%s'", result.script, name)

    return CapabilityProfile(
        version=str(supports["version"]),
        actions=frozenset(actions),
        events=frozenset(events),
    )


class CalloutRegistry:
    """Finds callout scripts and remembers what each one says it supports.

    One registry lives for one top-level command. Capability negotiation runs
    at most once per script path; concurrent lookups for the same path wait on
    that path's lock and reuse the answer.
    """

    def __init__(self, env: Environment) -> None:
        self.env = env
        self._profiles: dict[Path, CapabilityProfile | None] = {}
        self._path_locks: dict[Path, threading.Lock] = {}
        self._lock = threading.Lock()

    def _path_lock(self, path: Path) -> threading.Lock:
        with self._lock:
            return self._path_locks.setdefault(path, threading.Lock())

    @staticmethod
    def _list_dir(directory: Path) -> list[Path]:
        if not directory.is_dir():
            return []
        return sorted((p for p in directory.iterdir() if p.is_file()), key=lambda p: p.name)

    def scripts(self, dirs: list[tuple[ScriptTier, Path]]) -> list[tuple[ScriptTier, Path]]:
        found: list[tuple[ScriptTier, Path]] = []
        for tier, directory in dirs:
            found.extend((tier, path) for path in self._list_dir(directory))
        return found

    def capabilities(self, path: Path, dev: MDev) -> CapabilityProfile | None:
        with self._path_lock(path):
            if path in self._profiles:
                return self._profiles[path]
            profile = self._negotiate(path, dev)
            self._profiles[path] = profile
            return profile

    def _negotiate(self, path: Path, dev: MDev) -> CapabilityProfile | None:
        offer = json.dumps({"provides": PROVIDED_PROFILE.to_json()})
        try:
            result = run_script(path, dev, Event.GET, Action.CAPABILITIES, State.NONE, offer)
        except CalloutSpawnError as exc:
            LOGGER.debug("Capability query failed: %s", exc)
            return None

        if result.verdict is not Verdict.APPROVED or not result.stdout.strip():
            LOGGER.debug(
                "Callout script %s has no version support (status %s)", path, result.returncode
            )
            return None
        try:
            profile = _parse_capabilities(result)
        except MalformedCapabilityResponseError as exc:
            LOGGER.debug("Callout script %s has no version support: %s", path, exc)
            return None
        LOGGER.debug("Callout script %s supports versioning: %s", path, profile)
        return profile

    def callout_scripts(self, dev: MDev) -> list[CalloutScript]:
        return [
            CalloutScript(path=path, tier=tier, profile=self.capabilities(path, dev))
            for tier, path in self.scripts(self.env.callout_dirs())
        ]

    def candidates(self, dev: MDev, event: Event, action: Action) -> list[CalloutScript]:
        eligible: list[CalloutScript] = []
        for script in self.callout_scripts(dev):
            if script.supports(event, action):
                eligible.append(script)
            else:
                LOGGER.debug(
                    "Callout script %s does not support %s-%s", script.path, event, action
                )
        return eligible

    def notifiers(self) -> list[CalloutScript]:
        return [
            CalloutScript(path=path, tier=tier)
            for tier, path in self.scripts(self.env.notification_dirs())
        ]


class Callout:
    """Runs the callout protocol around operations on one device."""

    def __init__(self, dev: MDev, registry: CalloutRegistry) -> None:
        self.dev = dev
        self.registry = registry
        self.state = State.NONE

    def _stdin(self, event: Event) -> str:
        if event is Event.GET:
            return ""
        return json.dumps(self.dev.to_json(include_uuid=False))

    @staticmethod
    def _log_stderr(result: ScriptResult) -> None:
        stderr = result.stderr.strip()
        if not stderr:
            return
        if result.verdict is Verdict.REJECTED:
            LOGGER.warning("%s: %s", result.script.name, stderr)
        else:
            LOGGER.debug("%s: %s", result.script.name, stderr)

    def _select(self, event: Event, action: Action) -> ScriptResult | None:
        """Return the result of the first script that claims the device, if any."""
        pending_spawn_error: CalloutSpawnError | None = None
        for script in self.registry.candidates(self.dev, event, action):
            try:
                result = run_script(
                    script.path, self.dev, event, action, self.state, self._stdin(event)
                )
            except CalloutSpawnError as exc:
                LOGGER.debug("%s", exc)
                pending_spawn_error = exc
                continue
            pending_spawn_error = None

            if result.verdict is Verdict.TERMINATED:
                LOGGER.warning("callout script %s was terminated by a signal", script.path)
                continue
            if result.verdict is Verdict.NOT_APPLICABLE:
                LOGGER.debug(
                    "device type %s unmatched by callout script %s",
                    self.dev.mdev_type,
                    script.path,
                )
                continue
            LOGGER.debug("found callout script %s", script.path)
            self._log_stderr(result)
            return result

        if pending_spawn_error is not None:
            raise pending_spawn_error
        return None

    def callout(self, event: Event, action: Action) -> None:
        result = self._select(event, action)
        if result is None:
            LOGGER.debug("%s-%s: no callout script claimed device %s", event, action, self.dev.uuid)
            return
        if result.verdict is not Verdict.APPROVED:
            raise CalloutFailedError(result.script, result.returncode)

    def notify(self, action: Action) -> None:
        event = Event.NOTIFY
        LOGGER.debug("%s-%s: executing notification scripts for device %s", event, action, self.dev.uuid)
        for script in self.registry.notifiers():
            try:
                result = run_script(
                    script.path, self.dev, event, action, self.state, self._stdin(event)
                )
            except CalloutSpawnError as exc:
                LOGGER.debug("%s", exc)
                continue
            if result.verdict is not Verdict.APPROVED:
                LOGGER.debug(
                    "Error occurred when executing notify script %s (status %s)",
                    script.path,
                    result.returncode,
                )

    def invoke(self, action: Action, force: bool, mutation: Callable[[MDev], T]) -> T:
        """Run `mutation` between the pre and post callouts, then notify."""
        self.dev.require_parent()
        self.dev.require_type()
        try:
            try:
                self.callout(Event.PRE, action)
            except CalloutError as exc:
                if not force:
                    raise
                LOGGER.warning(
                    "Forcing operation '%s' despite callout failure. Error was: %s", action, exc
                )

            try:
                outcome = mutation(self.dev)
            except Exception:
                self.state = State.FAILURE
                self._post(action, force)
                raise
            self.state = State.SUCCESS
            self._post(action, force)
            return outcome
        finally:
            self.notify(action)

    def _post(self, action: Action, force: bool) -> None:
        try:
            self.callout(Event.POST, action)
        except CalloutError as exc:
            if force:
                LOGGER.warning("Ignoring post callout failure for '%s' (forced): %s", action, exc)
            else:
                LOGGER.warning("Error occurred when executing post callout script: %s", exc)

    def get_attributes(self) -> list[tuple[str, str]]:
        """Ask the claiming script for the attributes of the running device."""
        self.dev.require_parent()
        self.dev.require_type()
        result = self._select(Event.GET, Action.ATTRIBUTES)
        if result is None:
            LOGGER.debug("Device type %s unmatched by callout script", self.dev.mdev_type)
            return []
        if result.verdict is not Verdict.APPROVED:
            raise CalloutFailedError(result.script, result.returncode)

        output = result.stdout.strip()
        if not output or output == _EMPTY_ATTRIBUTES:
            LOGGER.debug("Attribute field for %s is empty", self.dev.uuid)
            return []
        try:
            doc = json.loads(output)
        except json.JSONDecodeError as exc:
            raise MalformedAttributeJSONError(
                f"Invalid JSON received from callout script {result.script}"
            ) from exc
        validate(
            doc,
            ATTRIBUTES_SCHEMA,
            error_cls=MalformedAttributeJSONError,
            source=str(result.script),
        )
        return parse_attribute_list(doc)

    def invoke_modify_live(self) -> None:
        """Apply the device's configuration to the running device via a versioned script."""
        self.dev.require_parent()
        self.dev.require_type()
        action = Action.MODIFY
        versioned = [s for s in self.registry.callout_scripts(self.dev) if s.versioned]
        if not versioned:
            raise CalloutError("No callout script with version support found")
        if not any(s.supports(Event.LIVE, action) for s in versioned):
            raise CalloutError(f"No callout script supports event '{Event.LIVE}' for action '{action}'")

        existing = read_sysfs_snapshot(self.dev.env, self.dev.uuid)
        if not existing.active:
            raise DeviceNotFoundError(f"Mediated device {self.dev.uuid} is not active")
        if existing.parent != self.dev.parent:
            raise CalloutError("Device exists under different parent - cannot run live update")
        if existing.mdev_type != self.dev.mdev_type:
            raise CalloutError("Device exists with different type - cannot run live update")

        try:
            self.callout(Event.LIVE, action)
        finally:
            self.notify(action)
