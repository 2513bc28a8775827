#!/usr/bin/env python3
# tracker.py
import logging
import socket
import struct
import urllib.parse
from dataclasses import dataclass

import requests

import bencode_codec
from errors import InvalidLength, TrackerError

log = logging.getLogger(__name__)

INTERVAL = 1800  # seconds, used when the tracker does not say
TIMEOUT = 10  # seconds to wait for the tracker

COMPACT_PEER_SIZE = 6


@dataclass(frozen=True)
class Peer:
    ip: str
    port: int

    def __str__(self):
        return f"{self.ip}:{self.port}"

    @classmethod
    def from_string(cls, address):
        """Parse "ip:port"."""
        host, sep, port = address.rpartition(":")
        if not sep or not host:
            raise ValueError(f"Peer address must look like ip:port, got {address!r}")
        return cls(host, int(port))


@dataclass(frozen=True)
class AnnounceResponse:
    interval: int
    peers: list
    complete: int = 0
    incomplete: int = 0


def parse_peers(raw) -> list:
    """Decode a compact peer list: 4 bytes IPv4 + 2 bytes big-endian port each."""
    if len(raw) % COMPACT_PEER_SIZE != 0:
        raise InvalidLength(len(raw), COMPACT_PEER_SIZE)

    peers = []
    for i in range(0, len(raw), COMPACT_PEER_SIZE):
        ip = socket.inet_ntoa(raw[i:i + 4])
        (port,) = struct.unpack("!H", raw[i + 4:i + 6])
        peers.append(Peer(ip, port))
    return peers


def build_announce_url(metadata, peer_id, port, uploaded=0, downloaded=0, left=None):
    """Build the GET URL for an announce to metadata.announce."""
    if left is None:
        left = metadata.length

    # info_hash and peer_id are raw bytes and must be URL-encoded byte by byte.
    params = {
        "info_hash": metadata.info_hash,
        "peer_id": peer_id,
        "port": port,
        "uploaded": uploaded,
        "downloaded": downloaded,
        "left": left,
        "compact": 1,
    }

    encoded_params = []
    for k, v in params.items():
        if isinstance(v, bytes):
            encoded = urllib.parse.quote_from_bytes(v)
        else:
            encoded = urllib.parse.quote(str(v))
        encoded_params.append(f"{k}={encoded}")
    query = "&".join(encoded_params)

    separator = "&" if "?" in metadata.announce else "?"
    return f"{metadata.announce}{separator}{query}"


def _int_field(response, key, default):
    value = response.get(key, default)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return default


def parse_announce_response(body) -> AnnounceResponse:
    decoded = bencode_codec.decode(body)
    if not isinstance(decoded, dict):
        raise TrackerError("Tracker response is not a dictionary")

    failure = decoded.get(b"failure reason")
    if failure is not None:
        if isinstance(failure, bytes):
            failure = failure.decode("utf-8", errors="replace")
        raise TrackerError(f"Tracker failure: {failure}")

    raw_peers = decoded.get(b"peers")
    if not isinstance(raw_peers, bytes):
        raise TrackerError("Tracker response has no compact 'peers' string")

    return AnnounceResponse(
        interval=_int_field(decoded, b"interval", INTERVAL),
        peers=parse_peers(raw_peers),
        complete=_int_field(decoded, b"complete", 0),
        incomplete=_int_field(decoded, b"incomplete", 0),
    )


def announce(metadata, peer_id, port, timeout=TIMEOUT, **counters) -> AnnounceResponse:
    """Announce to the tracker and return the peers it hands back."""
    url = build_announce_url(metadata, peer_id, port, **counters)
    log.info("GET to tracker %s", url)

    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise TrackerError(f"Failed to contact tracker: {e}") from e

    response = parse_announce_response(resp.content)
    log.info(
        "Tracker returned %d peers (interval %ds)", len(response.peers), response.interval
    )
    return response
