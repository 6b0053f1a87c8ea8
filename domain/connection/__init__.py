from .entity import Connection, HandshakeState, generate_public_id
from .events import GlobalMessagePosted, UserJoined, UserLeft

__all__ = [
    "Connection",
    "HandshakeState",
    "generate_public_id",
    "UserJoined",
    "UserLeft",
    "GlobalMessagePosted",
]
