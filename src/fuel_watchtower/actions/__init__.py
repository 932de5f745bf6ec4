"""Protective actions - contract pausing and alert routing."""

from fuel_watchtower.actions.dispatcher import ActionDispatcher, ActionStats
from fuel_watchtower.actions.pauser import ActionError, EthereumPauser, PauseTarget

__all__ = [
    "ActionDispatcher",
    "ActionError",
    "ActionStats",
    "EthereumPauser",
    "PauseTarget",
]
