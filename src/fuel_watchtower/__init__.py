"""Fuel Watchtower - cross-chain monitoring for the Fuel and Ethereum bridge."""

__version__ = "0.1.0"
