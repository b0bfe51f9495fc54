class BroadcastError(Exception):
    """Base class for errors raised by the broadcast core."""


class BackplaneConnectionError(BroadcastError):
    """The backplane lost (or could not establish) its broker connection."""


class BackplaneUnavailableError(BackplaneConnectionError):
    """A publish was attempted while the broker connection is down."""


class RoomMembershipError(BroadcastError):
    """A connection was found in a room other than the one the caller expected."""

    def __init__(self, connection_id: str, current_room: str, requested_room: str):
        self.connection_id = connection_id
        self.current_room = current_room
        self.requested_room = requested_room
        super().__init__(
            f"Connection {connection_id} is a member of room {current_room}, "
            f"cannot add it to room {requested_room}"
        )
