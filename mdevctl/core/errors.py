"""Domain-specific errors for mdevctl."""

from __future__ import annotations

from pathlib import Path


class MdevctlError(Exception):
    """Base error for mdevctl."""


class EnvironmentCheckError(MdevctlError):
    """Raised when a directory required by mdevctl is missing."""


class InvalidRequestError(MdevctlError):
    """Raised when command options contradict each other."""


class MissingParentError(MdevctlError):
    """Raised when an operation needs a parent device that is not known."""


class MissingTypeError(MdevctlError):
    """Raised when an operation needs an mdev type that is not known."""


class AlreadyExistsError(MdevctlError):
    """Raised when the device is already active under the same parent and type."""


class ConflictingParentOrTypeError(MdevctlError):
    """Raised when a device is active under a different parent or type."""


class ParentNotRegisteredError(MdevctlError):
    """Raised when the parent does not currently support mediated devices."""


class UnsupportedTypeError(MdevctlError):
    """Raised when the parent does not advertise the requested type."""


class NoAvailableInstancesError(MdevctlError):
    """Raised when the parent has no instances of the type left."""


class AttributeIndexError(MdevctlError):
    """Raised when an attribute index is outside the attribute list."""

    def __init__(self, index: int, attrs: list[tuple[str, str]]) -> None:
        self.index = index
        self.attrs = list(attrs)
        if attrs:
            listing = ", ".join(f"@{{{i}}}: {{{k!r}: {v!r}}}" for i, (k, v) in enumerate(attrs))
            hint = f"Current attributes: {listing}"
        else:
            hint = "The device has no attributes"
        super().__init__(f"Attribute index {index} is invalid. {hint}")


class DefinitionError(MdevctlError):
    """Raised when a device definition does not conform to the schema."""


class MalformedAttributeJSONError(MdevctlError):
    """Raised when a callout script returns unparsable attributes."""


class MalformedCapabilityResponseError(MdevctlError):
    """Raised when a capability reply cannot be understood."""


class DeviceIOError(MdevctlError):
    """Raised when reading or writing a definition or sysfs file fails."""


class DeviceNotFoundError(MdevctlError):
    """Raised when no definition or live entry matches the request."""


class AlreadyDefinedError(MdevctlError):
    """Raised when a definition already exists for the device."""


class AmbiguousDeviceError(MdevctlError):
    """Raised when several definitions match a UUID without a parent."""


class CalloutError(MdevctlError):
    """Base error for callout script failures, the only kind `force` overrides."""


class CalloutFailedError(CalloutError):
    """Raised when a callout script rejects an operation."""

    def __init__(self, script: Path, returncode: int | None) -> None:
        self.script = script
        self.returncode = returncode
        status = "unknown" if returncode is None else str(returncode)
        super().__init__(f"Script {str(script)!r} failed with status '{status}'")


class CalloutSpawnError(CalloutError):
    """Raised when a callout script cannot be executed at all."""

    def __init__(self, script: Path, reason: str) -> None:
        self.script = script
        super().__init__(f"Failed to execute callout script {str(script)!r}: {reason}")
