# errors.py


class TorrentError(Exception):
    """Base class for every error raised by this client."""


class MalformedEncoding(TorrentError, ValueError):
    """Bencoded data does not follow the grammar."""

    def __init__(self, message, offset):
        super().__init__(f"{message} (at offset {offset})")
        self.offset = offset


class MetadataError(TorrentError):
    """The .torrent file is structurally incomplete."""


class MissingField(MetadataError):
    def __init__(self, field, expected=None):
        if expected is None:
            message = f"Missing required field {field!r}"
        else:
            message = f"Field {field!r} is missing or not {expected}"
        super().__init__(message)
        self.field = field


class InvalidPieceTable(MetadataError):
    pass


class InvalidLength(TorrentError, ValueError):
    """A flat buffer is not a whole number of fixed-size records."""

    def __init__(self, length, unit):
        super().__init__(f"Buffer length {length} is not a multiple of {unit}")
        self.length = length
        self.unit = unit


class TrackerError(TorrentError):
    pass


class PeerError(TorrentError):
    """Something went wrong talking to a single peer."""


class HandshakeFailed(PeerError):
    pass


class ConnectionClosed(PeerError):
    pass


class ProtocolError(PeerError):
    pass


class UnexpectedMessage(ProtocolError):
    def __init__(self, expected, actual, message=None):
        super().__init__(message or f"Expected message id {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class UnexpectedBlock(UnexpectedMessage):
    """A piece message carrying a block that was never requested."""

    def __init__(self, message_id, message):
        super().__init__(message_id, message_id, message)


class IntegrityError(TorrentError):
    def __init__(self, index, expected, actual):
        super().__init__(
            f"Piece {index} failed SHA1 verification: "
            f"expected {expected.hex()}, got {actual.hex()}"
        )
        self.index = index
        self.expected = expected
        self.actual = actual


class DownloadFailed(TorrentError):
    def __init__(self, index, attempts, cause=None):
        message = f"Piece {index} could not be downloaded after {attempts} attempt(s)"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.index = index
        self.attempts = attempts
        self.cause = cause
