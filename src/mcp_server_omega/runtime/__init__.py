"""Omega observer runtime: registry, policy, gateway, storage and tool implementations."""
