"""Full-mesh peer connections.

This module provides:
- peer_link: per-peer negotiation state (PeerLink, LinkState, RemoteStream)
- peer_mesh: PeerMeshManager, which owns one PeerLink per remote participant
"""

from chatroom_rtc.mesh.peer_link import LinkState, PeerLink, RemoteStream
from chatroom_rtc.mesh.peer_mesh import (
    PeerMeshManager,
    parse_candidate,
    serialize_candidate,
)

__all__ = [
    "LinkState",
    "PeerLink",
    "RemoteStream",
    "PeerMeshManager",
    "parse_candidate",
    "serialize_candidate",
]
