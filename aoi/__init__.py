"""AOI — multi-camera capture controller for serialized unit inspection.

Components:
  - station: wire protocol, registry, command fan-out, TCP server, mDNS
  - workflow: step gating, operator input, completion checks
  - storage: image persistence and per-session file counts
  - controller: single owner of shared state
  - api: operator HTTP API
"""

__version__ = "0.1.0"
