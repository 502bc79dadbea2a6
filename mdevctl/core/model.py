"""Core data models used across the reconciler, callouts, service, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

# Exit status a callout script uses to say "this device is not mine".
NOT_APPLICABLE_RC = 2


class _Token(str, Enum):
    def __str__(self) -> str:
        return self.value


class Event(_Token):
    PRE = "pre"
    POST = "post"
    NOTIFY = "notify"
    GET = "get"
    LIVE = "live"


class Action(_Token):
    START = "start"
    STOP = "stop"
    DEFINE = "define"
    UNDEFINE = "undefine"
    MODIFY = "modify"
    ATTRIBUTES = "attributes"
    CAPABILITIES = "capabilities"
    TEST = "test"


class State(_Token):
    NONE = "none"
    SUCCESS = "success"
    FAILURE = "failure"


class Verdict(Enum):
    APPROVED = "approved"
    NOT_APPLICABLE = "not-applicable"
    REJECTED = "rejected"
    TERMINATED = "terminated"


class ScriptTier(_Token):
    CURRENT = "current"
    LEGACY = "legacy"


@dataclass(frozen=True)
class CapabilityProfile:
    version: str
    actions: frozenset[Action]
    events: frozenset[Event]

    def supports(self, event: Event, action: Action) -> bool:
        return action in self.actions and event in self.events

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "actions": [a.value for a in Action if a in self.actions],
            "events": [e.value for e in Event if e in self.events],
        }


# What this implementation offers to scripts during negotiation.
PROVIDED_PROFILE = CapabilityProfile(
    version="1.2.0",
    actions=frozenset(
        {
            Action.START,
            Action.STOP,
            Action.DEFINE,
            Action.UNDEFINE,
            Action.MODIFY,
            Action.ATTRIBUTES,
            Action.CAPABILITIES,
        }
    ),
    events=frozenset({Event.PRE, Event.POST, Event.NOTIFY, Event.GET, Event.LIVE}),
)


@dataclass(frozen=True)
class CalloutScript:
    path: Path
    tier: ScriptTier
    profile: CapabilityProfile | None = None

    @property
    def versioned(self) -> bool:
        return self.profile is not None

    def supports(self, event: Event, action: Action) -> bool:
        # unversioned scripts are asked about everything and answer with their exit code
        if self.profile is None:
            return True
        return self.profile.supports(event, action)


@dataclass(frozen=True)
class ScriptResult:
    script: Path
    returncode: int | None
    stdout: str
    stderr: str

    @property
    def verdict(self) -> Verdict:
        if self.returncode is None:
            return Verdict.TERMINATED
        if self.returncode == 0:
            return Verdict.APPROVED
        if self.returncode == NOT_APPLICABLE_RC:
            return Verdict.NOT_APPLICABLE
        return Verdict.REJECTED


@dataclass(frozen=True)
class SysfsSnapshot:
    """Point-in-time view of the live sysfs entry for one UUID."""

    uuid: UUID
    active: bool = False
    parent: str | None = None
    mdev_type: str | None = None
    path: Path | None = field(default=None, compare=False)


@dataclass(frozen=True)
class MDevType:
    parent: str
    typename: str
    available_instances: int
    device_api: str
    name: str = ""
    description: str = ""

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "available_instances": self.available_instances,
            "device_api": self.device_api,
        }
        if self.name:
            body["name"] = self.name
        if self.description:
            body["description"] = self.description
        return {self.typename: body}
