"""Typed dev server events.

The engine reports through plain dicts (``{"event": name, ...}``) so it
has no dependency on this module. Frontends turn those dicts into the
dataclasses below and back into JSON-ready dicts for the wire.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar


@dataclass
class DevServerEvent:
    """Fields shared by every event."""
    event_type: ClassVar[str] = ""

    worktree_path: str = ""
    timestamp: str = ""


@dataclass
class DevServerStarted(DevServerEvent):
    event_type: ClassVar[str] = "dev_server_started"

    port: int = 0
    url: str = ""


@dataclass
class DevServerOutput(DevServerEvent):
    event_type: ClassVar[str] = "dev_server_output"

    content: str = ""


@dataclass
class DevServerStopped(DevServerEvent):
    event_type: ClassVar[str] = "dev_server_stopped"

    port: int = 0
    # None when the stop was requested rather than observed.
    exit_code: int | None = None
    error: str | None = None


EVENT_TYPES: dict[str, type[DevServerEvent]] = {
    cls.event_type: cls
    for cls in (DevServerStarted, DevServerOutput, DevServerStopped)
}


def event_to_dict(event: DevServerEvent) -> dict[str, Any]:
    """Wire form of *event*; unset optional fields are left out."""
    payload: dict[str, Any] = {"event": event.event_type}
    payload.update(
        (key, value) for key, value in asdict(event).items() if value is not None
    )
    return payload


def dict_to_event(data: dict[str, Any]) -> DevServerEvent:
    """Parse an engine callback dict. Unknown keys are ignored.

    Raises:
        ValueError: the ``event`` name is not a known event type.
    """
    name = data.get("event", "")
    cls = EVENT_TYPES.get(name)
    if cls is None:
        raise ValueError(f"Unknown dev server event: {name!r}")
    accepted = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in data.items() if key in accepted})
