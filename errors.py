"""Error taxonomy shared by the relay and the session orchestrator."""


class SignalingError(Exception):
    """Base class for every rendezvous/negotiation error."""


class CapacityExceeded(SignalingError):
    """The room already has two members. Recoverable: retry with another room key."""

    def __init__(self, room_key: str, capacity: int = 2):
        self.room_key = room_key
        self.capacity = capacity
        super().__init__(f"Room is full (max {capacity} users)")


class RoutingMiss(SignalingError):
    """A relayed message targeted a connection that is gone or outside the sender's room."""

    def __init__(self, to_id: str, reason: str = "unknown target"):
        self.to_id = to_id
        self.reason = reason
        super().__init__(f"Cannot route message to {to_id}: {reason}")


class InvalidMessage(SignalingError):
    """An inbound frame could not be parsed or carried an invalid value."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class NegotiationFailure(SignalingError):
    """The negotiation primitive reported a fatal error; the message is kept verbatim."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
