"""
Shipyard - supervised rollouts of containerized apps onto long-lived hosts.

Given a declarative app description (image, routing, ports, health policy),
Shipyard starts the new version, verifies health, commits or rolls back,
and records what is deployed so later deployments and rollbacks stay
consistent.
"""

__version__ = "0.3.0"
