"""Pytest configuration and shared fixtures for the tinytorrent tests."""

import hashlib
import socket
import struct
import threading
from collections import Counter

import pytest

import bencode_codec
from errors import PeerError
from peer import (
    HANDSHAKE_LENGTH,
    MESSAGE_BITFIELD,
    MESSAGE_PIECE,
    MESSAGE_REQUEST,
    MESSAGE_UNCHOKE,
    Handshake,
    PeerConnection,
    pack_piece,
    receive_exact,
    receive_message,
    send_message,
    unpack_request,
)
from torrent_metadata import TorrentMetadata

# The well-known single-file sample torrent (sample.txt, 3 pieces).
SAMPLE_PIECE_HASHES = bytes.fromhex(
    "e876f67a2a8886e8f36b136726c30fa29703022d"
    "6e2275e604a0766656736e81ff10b55204ad8d35"
    "f00d937a0213df1982bc8d097227ad9e909acc17"
)
SAMPLE_INFO = (
    b"d6:lengthi92063e4:name10:sample.txt12:piece lengthi32768e6:pieces60:"
    + SAMPLE_PIECE_HASHES
    + b"e"
)
SAMPLE_TORRENT = (
    b"d8:announce47:http://bittorrent-test.codecrafters.io/announce"
    b"10:created by13:mktorrent 1.14:info" + SAMPLE_INFO + b"e"
)
SAMPLE_INFO_HASH = "d69f91e6b2ae4c542468d1073a71d4ea13879a7f"

REMOTE_PEER_ID = b"-RM0001-remotepeer01"
LOCAL_PEER_ID = b"-TT0001-localpeer001"


def frame(message_id, payload=b""):
    """A single wire message as the remote end would send it."""
    return struct.pack("!IB", 1 + len(payload), message_id) + payload


def parse_frames(data):
    """Split bytes written to a socket into (message_id, payload) pairs."""
    messages = []
    pos = 0
    while pos < len(data):
        (length,) = struct.unpack("!I", data[pos:pos + 4])
        body = data[pos + 4:pos + 4 + length]
        messages.append((body[0], body[1:]))
        pos += 4 + length
    return messages


class FakeSocket:
    """Replays scripted incoming bytes and records everything sent."""

    def __init__(self, incoming=b"", chunk_size=None, fail_send=False):
        self._incoming = bytearray(incoming)
        self.chunk_size = chunk_size
        self.fail_send = fail_send
        self.sent = bytearray()
        self.requested = []  # sizes passed to recv
        self.closed = False

    def feed(self, data):
        self._incoming += data

    def recv(self, n):
        if self.closed:
            raise OSError("socket is closed")
        self.requested.append(n)
        size = min(n, len(self._incoming))
        if self.chunk_size is not None:
            size = min(size, self.chunk_size)
        data = bytes(self._incoming[:size])
        del self._incoming[:size]
        return data

    def sendall(self, data):
        if self.fail_send:
            raise BrokenPipeError("broken pipe")
        self.sent += data

    def shutdown(self, how):
        pass

    def close(self):
        self.closed = True

    @property
    def messages(self):
        return parse_frames(bytes(self.sent))


def build_torrent(data, piece_length, announce=b"http://tracker.test/announce", name=b"test.bin"):
    pieces = b"".join(
        hashlib.sha1(data[i:i + piece_length]).digest() for i in range(0, len(data), piece_length)
    )
    return bencode_codec.encode(
        {
            b"announce": announce,
            b"info": {
                b"length": len(data),
                b"name": name,
                b"piece length": piece_length,
                b"pieces": pieces,
            },
        }
    )


def serve_pieces(sock, metadata, data, corrupt=False):
    """Act as a seeding peer on sock until the other end goes away."""
    try:
        Handshake.from_bytes(receive_exact(sock, HANDSHAKE_LENGTH))
        sock.sendall(Handshake(metadata.info_hash, REMOTE_PEER_ID).to_bytes())
        send_message(sock, MESSAGE_BITFIELD, b"\xff" * ((metadata.num_pieces + 7) // 8))
        receive_message(sock)  # interested
        send_message(sock, MESSAGE_UNCHOKE)
        while True:
            message = receive_message(sock)
            if message.message_id != MESSAGE_REQUEST:
                continue
            index, begin, length = unpack_request(message.payload)
            start = metadata.piece_offset(index) + begin
            block = data[start:start + length]
            if corrupt:
                block = bytes(b ^ 0xFF for b in block)
            send_message(sock, MESSAGE_PIECE, pack_piece(index, begin, block))
    except (PeerError, OSError):
        pass
    finally:
        sock.close()


class FakeSwarm:
    """Hands out PeerConnections backed by socketpairs with a seeding thread behind each."""

    def __init__(self, metadata, data):
        self.metadata = metadata
        self.data = data
        self.corrupt = set()
        self.refuse = set()
        self.connects = Counter()

    def connect(self, peer, timeout):
        self.connects[peer] += 1
        if peer in self.refuse:
            raise ConnectionRefusedError(f"{peer} refused the connection")
        ours, theirs = socket.socketpair()
        ours.settimeout(timeout)
        threading.Thread(
            target=serve_pieces,
            args=(theirs, self.metadata, self.data, peer in self.corrupt),
            daemon=True,
        ).start()
        return PeerConnection(ours, peer)


@pytest.fixture
def sample_torrent():
    return SAMPLE_TORRENT


@pytest.fixture
def fake_socket():
    return FakeSocket


@pytest.fixture
def make_torrent():
    return build_torrent


@pytest.fixture
def make_metadata():
    def _make(data, piece_length):
        return TorrentMetadata.from_bytes(build_torrent(data, piece_length))

    return _make


@pytest.fixture
def swarm_factory():
    return FakeSwarm
