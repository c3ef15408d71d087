"""Custom exceptions shared by all layers. Everything raised on purpose derives from GameError."""


class GameError(Exception):
    """Top-level exception for anything going wrong in a game or room."""


# --- MOVES ---
class IllegalMoveError(GameError):
    """The move is rejected. The game state has not been touched."""


class LineAlreadyDrawnError(IllegalMoveError):
    pass


class LineOutOfBoundsError(IllegalMoveError):
    pass


class NotYourTurnError(IllegalMoveError):
    pass


class GameNotInProgressError(IllegalMoveError):
    pass


# --- STATE / WIRE DATA ---
class GameStateError(GameError):
    """Game data (boundary model or wire record) is inconsistent."""


class SnapshotError(GameStateError):
    """A replicated snapshot could not be interpreted."""


class InvalidRequestError(GameError):
    pass


class InvalidLineKeyError(InvalidRequestError):
    pass


# --- STORE ---
class StoreError(GameError):
    pass


class NetworkUnavailableError(StoreError):
    """The replicated store cannot be reached."""


# --- ROOMS ---
class RoomError(GameError):
    pass


class RoomNotFoundError(RoomError):
    pass


class RoomFullError(RoomError):
    pass


class DuplicateNameError(RoomError):
    pass


class RoomNotAcceptingPlayersError(RoomError):
    pass


class NotHostError(RoomError):
    pass


class RoomCodeUnavailableError(RoomError):
    pass


class QuickMatchCommittedError(RoomError):
    pass
