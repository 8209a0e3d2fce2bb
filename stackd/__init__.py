"""stackd: single-node stack runner for docker.

Turns a compose-style stack description into running containers:
 - dependency-ordered, idempotent start/update of every service
 - label-based teardown and status (no in-memory registry)
 - live log streaming and interactive shells over websockets

Runtime state is always re-read from docker through label filters.
"""
