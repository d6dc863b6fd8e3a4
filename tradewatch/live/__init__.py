"""Live streaming package.

Components that run on the event loop against the node's WebSocket: the
JSON-RPC multiplexer, the self-healing connection manager and the trade
listener that wires them to the aggregator and the notification sink.
"""
