"""Run monitor — read-only projection over the run ledger.

Modules
-------
projection
    ``MonitorProjection`` replays ledger entries into frozen
    ``MonitorSnapshot`` models.
renderer
    ``MonitorRenderer`` turns snapshots and the live ``DeploymentState``
    into Rich renderables.
"""
