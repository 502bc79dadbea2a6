"""Typer CLI entrypoints for `mdevctl` and `lsmdev`."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from uuid import UUID

import typer

from mdevctl.core.errors import MdevctlError
from mdevctl.core.service import MdevctlService, error_chain

LOG_LEVEL_VAR = "MDEVCTL_LOG"

app = typer.Typer(help="A mediated device management utility for Linux")
lsmdev_app = typer.Typer(help="List mediated devices")


def _configure_logging() -> None:
    level_name = os.environ.get(LOG_LEVEL_VAR, "WARNING").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format="[%(levelname)s %(name)s] %(message)s")


def _build_service() -> MdevctlService:
    return MdevctlService()


def _fail(exc: MdevctlError) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    for cause in list(error_chain(exc))[1:]:
        typer.echo(f"  Caused by: {cause}", err=True)
    return typer.Exit(code=1)


def _echo_output(output: str) -> None:
    typer.echo(output.rstrip("\n"))


@app.command("define")
def define(
    uuid: UUID | None = typer.Option(None, "--uuid", "-u", help="Assign UUID to the device"),
    auto: bool = typer.Option(False, "--auto", "-a", help="Automatically start device on parent availability"),
    parent: str | None = typer.Option(None, "--parent", "-p", help="Specify the parent of the device"),
    mdev_type: str | None = typer.Option(None, "--type", "-t", help="Specify the mdev type of the device"),
    jsonfile: Path | None = typer.Option(None, "--jsonfile", help="Specify device details in JSON format"),
    force: bool = typer.Option(False, "--force", "-f", help="Override a decline by a callout script"),
) -> None:
    """Define a persistent mediated device.

    If the device specified by the UUID currently exists, PARENT and TYPE may be
    omitted to use the existing values. Running devices are unaffected.
    """
    try:
        service = _build_service()
        dev = service.define(
            uuid,
            auto=auto,
            parent=parent,
            mdev_type=mdev_type,
            jsonfile=jsonfile,
            force=force,
        )
        if uuid is None:
            typer.echo(str(dev.uuid))
    except MdevctlError as exc:
        raise _fail(exc) from None


@app.command("undefine")
def undefine(
    uuid: UUID = typer.Option(..., "--uuid", "-u", help="UUID of the device to be undefined"),
    parent: str | None = typer.Option(None, "--parent", "-p", help="Parent of the device to be undefined"),
    force: bool = typer.Option(False, "--force", "-f", help="Override a decline by a callout script"),
) -> None:
    """Undefine a persistent mediated device.

    If a UUID exists for multiple parents, all are removed unless a parent is given.
    """
    try:
        service = _build_service()
        service.undefine(uuid, parent, force=force)
    except MdevctlError as exc:
        raise _fail(exc) from None


@app.command("modify")
def modify(
    uuid: UUID = typer.Option(..., "--uuid", "-u", help="UUID of the mdev to modify"),
    parent: str | None = typer.Option(None, "--parent", "-p", help="Parent of the mdev to modify"),
    mdev_type: str | None = typer.Option(None, "--type", "-t", help="Modify the mdev type for this device"),
    addattr: str | None = typer.Option(None, "--addattr", metavar="ATTR_NAME", help="Add a new attribute"),
    delattr: bool = typer.Option(False, "--delattr", help="Delete an attribute"),
    index: int | None = typer.Option(None, "--index", "-i", min=0, help="Index of the attribute to modify"),
    value: str | None = typer.Option(None, "--value", metavar="ATTR_VALUE", help="Value for the attribute given by --addattr"),
    auto: bool = typer.Option(False, "--auto", "-a", help="Device will be started automatically"),
    manual: bool = typer.Option(False, "--manual", "-m", help="Device must be started manually"),
    live: bool = typer.Option(False, "--live", help="Apply the change to the running device"),
    defined: bool = typer.Option(False, "--defined", help="With --live, also update the definition"),
    jsonfile: Path | None = typer.Option(None, "--jsonfile", help="Specify device details in JSON format"),
    force: bool = typer.Option(False, "--force", "-f", help="Override a decline by a callout script"),
) -> None:
    """Modify the definition of a mediated device.

    Attribute edits apply to the end of the attribute list unless an INDEX is
    given. Use --live with --jsonfile to reconfigure a running device.
    """
    try:
        service = _build_service()
        service.modify(
            uuid,
            parent=parent,
            mdev_type=mdev_type,
            addattr=addattr,
            delattr=delattr,
            index=index,
            value=value,
            auto=auto,
            manual=manual,
            live=live,
            defined=defined,
            jsonfile=jsonfile,
            force=force,
        )
    except MdevctlError as exc:
        raise _fail(exc) from None


@app.command("start")
def start(
    uuid: UUID | None = typer.Option(None, "--uuid", "-u", help="UUID of the device to start"),
    parent: str | None = typer.Option(None, "--parent", "-p", help="Parent of the device to start"),
    mdev_type: str | None = typer.Option(None, "--type", "-t", help="Mdev type of the device to start"),
    jsonfile: Path | None = typer.Option(None, "--jsonfile", help="Details of the device to be started, in JSON format"),
    force: bool = typer.Option(False, "--force", "-f", help="Override a decline by a callout script"),
) -> None:
    """Start a mediated device.

    A previously defined, unique UUID is enough to start a device. With PARENT
    and TYPE the device is fully specified; a UUID is generated and printed
    when none is given.
    """
    try:
        service = _build_service()
        dev = service.start(
            uuid,
            parent=parent,
            mdev_type=mdev_type,
            jsonfile=jsonfile,
            force=force,
        )
        if uuid is None:
            typer.echo(str(dev.uuid))
    except MdevctlError as exc:
        raise _fail(exc) from None


@app.command("stop")
def stop(
    uuid: UUID = typer.Option(..., "--uuid", "-u", help="UUID of the device to stop"),
    force: bool = typer.Option(False, "--force", "-f", help="Override a decline by a callout script"),
) -> None:
    """Stop a mediated device."""
    try:
        service = _build_service()
        service.stop(uuid, force=force)
    except MdevctlError as exc:
        raise _fail(exc) from None


def _list(defined: bool, dumpjson: bool, verbose: bool, uuid: UUID | None, parent: str | None) -> None:
    try:
        service = _build_service()
        output = service.list_devices(
            defined=defined,
            dumpjson=dumpjson,
            verbose=verbose,
            uuid=uuid,
            parent=parent,
        )
        _echo_output(output)
    except MdevctlError as exc:
        raise _fail(exc) from None


@app.command("list")
def list_devices(
    defined: bool = typer.Option(False, "--defined", "-d", help="Show defined devices"),
    dumpjson: bool = typer.Option(False, "--dumpjson", help="Output device list in json format"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print additional information about the devices"),
    uuid: UUID | None = typer.Option(None, "--uuid", "-u", help="List devices matching the specified UUID"),
    parent: str | None = typer.Option(None, "--parent", "-p", help="List devices of the specified parent"),
) -> None:
    """List running mediated devices, or defined ones with --defined."""
    _list(defined, dumpjson, verbose, uuid, parent)


@lsmdev_app.command()
def lsmdev(
    defined: bool = typer.Option(False, "--defined", "-d", help="Show defined devices"),
    dumpjson: bool = typer.Option(False, "--dumpjson", help="Output device list in json format"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print additional information about the devices"),
    uuid: UUID | None = typer.Option(None, "--uuid", "-u", help="List devices matching the specified UUID"),
    parent: str | None = typer.Option(None, "--parent", "-p", help="List devices of the specified parent"),
) -> None:
    """List mediated devices."""
    _list(defined, dumpjson, verbose, uuid, parent)


@app.command("types")
def list_types(
    parent: str | None = typer.Option(None, "--parent", "-p", help="Show supported types for the specified parent"),
    dumpjson: bool = typer.Option(False, "--dumpjson", help="Output mdev types list in JSON format"),
) -> None:
    """List available mediated device types."""
    try:
        service = _build_service()
        _echo_output(service.types(parent, dumpjson=dumpjson))
    except MdevctlError as exc:
        raise _fail(exc) from None


@app.command("start-parent-mdevs", hidden=True)
def start_parent_mdevs(parent: str) -> None:
    try:
        service = _build_service()
        service.start_parent_mdevs(parent)
    except MdevctlError as exc:
        raise _fail(exc) from None


def run() -> None:
    _configure_logging()
    app()


def run_lsmdev() -> None:
    _configure_logging()
    lsmdev_app()


if __name__ == "__main__":
    run()
