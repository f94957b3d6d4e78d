"""Protocol-level records shared by the central system and the core services."""

from .domain import (
    ConnectorState,
    Direction,
    LoggedMessage,
    MessageKind,
    extract_energy_wh,
    map_online_status,
)

__all__ = [
    "ConnectorState",
    "Direction",
    "LoggedMessage",
    "MessageKind",
    "extract_energy_wh",
    "map_online_status",
]
