"""pm-node - process manager node agent.

Runs on every machine of a cluster and keeps a persistent control connection
to the pm master. The master drives the node over JSON-RPC.

Key responsibilities:
- Connect to the master and reconnect when the connection is lost
- Heartbeat the master and warn about high round-trip latency
- Report host facts and per-process CPU/memory usage
- Spawn and kill child processes, optionally streaming their output back
"""

__version__ = "0.1.0"
