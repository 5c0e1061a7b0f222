"""Peer transports: in-process loopback and aiortc."""

from huddle.transport.base import DataConnection, MediaCall, Transport
from huddle.transport.loopback import LoopbackBroker, LoopbackTransport

__all__ = [
    "DataConnection",
    "LoopbackBroker",
    "LoopbackTransport",
    "MediaCall",
    "Transport",
]
