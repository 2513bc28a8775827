#!/usr/bin/env python3
import enum
import logging
import socket
import struct
from dataclasses import dataclass

from errors import (
    ConnectionClosed,
    HandshakeFailed,
    ProtocolError,
    UnexpectedMessage,
)

log = logging.getLogger(__name__)

# BitTorrent peer wire message ids ------
MESSAGE_CHOKE = 0
MESSAGE_UNCHOKE = 1
MESSAGE_INTERESTED = 2
MESSAGE_NOT_INTERESTED = 3
MESSAGE_HAVE = 4
MESSAGE_BITFIELD = 5
MESSAGE_REQUEST = 6
MESSAGE_PIECE = 7
MESSAGE_CANCEL = 8

PROTOCOL_NAME = b"BitTorrent protocol"
RESERVED = bytes(8)
HANDSHAKE_LENGTH = 1 + len(PROTOCOL_NAME) + len(RESERVED) + 20 + 20  # 68
RECV_CHUNK = 64 * 1024
# Room for a 128 KiB block or the bitfield of ~2 million pieces
MAX_MESSAGE_LENGTH = 256 * 1024
# Everything after the protocol name: reserved + info_hash + peer_id
_HANDSHAKE_TAIL = len(RESERVED) + 20 + 20

DEFAULT_TIMEOUT = 10.0


class HandshakeState(enum.Enum):
    UNSENT = "unsent"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Handshake:
    info_hash: bytes
    peer_id: bytes
    protocol: bytes = PROTOCOL_NAME
    reserved: bytes = RESERVED

    def to_bytes(self) -> bytes:
        """Pack as <pstrlen><pstr><reserved><info_hash><peer_id>."""
        if len(self.info_hash) != 20 or len(self.peer_id) != 20:
            raise ValueError("info_hash and peer_id must be 20 bytes each")
        return (
            bytes([len(self.protocol)])
            + self.protocol
            + self.reserved
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Handshake":
        if len(data) != HANDSHAKE_LENGTH:
            raise HandshakeFailed(
                f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            )
        pstrlen = data[0]
        if 1 + pstrlen + _HANDSHAKE_TAIL > HANDSHAKE_LENGTH:
            raise HandshakeFailed(f"Protocol name length {pstrlen} does not fit in handshake")

        # info_hash and peer_id always sit at the end of the 68 bytes
        return cls(
            info_hash=data[-40:-20],
            peer_id=data[-20:],
            protocol=data[1:1 + pstrlen],
            reserved=data[-48:-40],
        )


@dataclass(frozen=True)
class Message:
    message_id: int
    payload: bytes = b""


def send_message(sock, message_id: int, payload: bytes = b""):
    """Send a length-prefixed message: [4-byte length][1-byte id][payload].

    The length field counts the id byte plus the payload bytes.
    """
    header = struct.pack("!IB", 1 + len(payload), message_id)
    sock.sendall(header + payload)


def receive_exact(sock, n: int) -> bytes:
    """Read exactly n bytes from the socket, looping over partial reads."""
    buf = bytearray()
    while len(buf) < n:
        try:
            chunk = sock.recv(min(n - len(buf), RECV_CHUNK))
        except OSError as e:
            raise ConnectionClosed(f"Read failed after {len(buf)}/{n} bytes: {e}") from e
        if not chunk:
            raise ConnectionClosed(f"Connection closed after {len(buf)}/{n} bytes")
        buf += chunk
    return bytes(buf)


def receive_message(sock, max_length: int = MAX_MESSAGE_LENGTH) -> Message:
    """Receive one message, skipping any keep-alives in front of it.

    A length prefix above max_length is rejected before the body is read.
    """
    while True:
        (length,) = struct.unpack("!I", receive_exact(sock, 4))  # First 4 bytes: length
        if length == 0:
            log.debug("keep-alive")
            continue
        if length > max_length:
            raise ProtocolError(f"Message length {length} exceeds limit of {max_length} bytes")
        body = receive_exact(sock, length)
        return Message(body[0], body[1:])


def pack_request(index: int, begin: int, length: int) -> bytes:
    return struct.pack("!III", index, begin, length)


def unpack_request(payload: bytes):
    if len(payload) != 12:
        raise ProtocolError(f"Request payload must be 12 bytes, got {len(payload)}")
    return struct.unpack("!III", payload)


def pack_piece(index: int, begin: int, block: bytes) -> bytes:
    return struct.pack("!II", index, begin) + block


def unpack_piece(payload: bytes):
    """Split a piece payload into (index, begin, block)."""
    if len(payload) < 8:
        raise ProtocolError(f"Piece payload too short: {len(payload)} bytes")
    index, begin = struct.unpack("!II", payload[:8])
    return index, begin, payload[8:]


class PeerConnection:
    """One outgoing connection to a remote peer.

    Wraps anything with sendall()/recv()/close(), normally a socket.
    """

    def __init__(self, sock, remote_addr=None):
        self.sock = sock
        self.remote_addr = remote_addr  # (ip, port) or Peer
        self.state = HandshakeState.UNSENT
        self.remote_peer_id = None
        self.remote_info_hash = None
        self.unchoked = False
        self.closed = False

    @classmethod
    def open(cls, peer, timeout=DEFAULT_TIMEOUT):
        """Connect to peer (anything with .ip/.port) over TCP."""
        sock = socket.create_connection((peer.ip, peer.port), timeout=timeout)
        log.info("Connected to %s", peer)
        return cls(sock, peer)

    def handshake(self, info_hash: bytes, peer_id: bytes, check_info_hash: bool = True) -> Handshake:
        """Send our handshake, read the reply and return it.

        A connection whose handshake failed must be abandoned.
        """
        if self.state is not HandshakeState.UNSENT:
            raise HandshakeFailed(f"Cannot handshake on a connection in state {self.state.value}")

        message = Handshake(info_hash, peer_id).to_bytes()
        try:
            self.sock.sendall(message)
        except OSError as e:
            self.state = HandshakeState.FAILED
            raise HandshakeFailed(f"Failed to send handshake: {e}") from e
        self.state = HandshakeState.SENT

        try:
            reply = Handshake.from_bytes(receive_exact(self.sock, HANDSHAKE_LENGTH))
        except ConnectionClosed as e:
            self.state = HandshakeState.FAILED
            raise HandshakeFailed(f"Short handshake reply: {e}") from e
        except HandshakeFailed:
            self.state = HandshakeState.FAILED
            raise

        if check_info_hash and reply.info_hash != info_hash:
            self.state = HandshakeState.FAILED
            raise HandshakeFailed(
                f"Info hash mismatch: sent {info_hash.hex()}, got {reply.info_hash.hex()}"
            )

        self.remote_info_hash = reply.info_hash
        self.remote_peer_id = reply.peer_id
        self.state = HandshakeState.COMPLETED
        log.info("Handshake complete with %s (peer id %s)", self.remote_addr, reply.peer_id.hex())
        return reply

    def send(self, message_id: int, payload: bytes = b""):
        try:
            send_message(self.sock, message_id, payload)
        except OSError as e:
            raise ConnectionClosed(f"Write failed: {e}") from e

    def receive(self) -> Message:
        return receive_message(self.sock)

    def expect(self, message_id: int) -> Message:
        """Receive the next message and fail unless it has the given id."""
        message = self.receive()
        if message.message_id != message_id:
            raise UnexpectedMessage(message_id, message.message_id)
        return message

    def send_interested(self):
        self.send(MESSAGE_INTERESTED)

    def send_request(self, index: int, begin: int, length: int):
        self.send(MESSAGE_REQUEST, pack_request(index, begin, length))

    def close(self):
        """Close the socket. Any blocked read on it fails with ConnectionClosed."""
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already disconnected by the remote end
            pass
        self.sock.close()
        log.debug("Closed connection with %s", self.remote_addr)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __repr__(self):
        return f"PeerConnection({self.remote_addr}, state={self.state.value})"
