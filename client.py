#!/usr/bin/env python3
import argparse
import json
import logging
import os
import random
import sys

import bencode_codec
import tracker
from downloader import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONNECTIONS,
    DEFAULT_PIPELINE,
    DEFAULT_TIMEOUT,
    download_file,
    download_piece,
)
from errors import TorrentError
from peer import PeerConnection
from torrent_metadata import TorrentMetadata

log = logging.getLogger("client")

DEFAULT_PORT = 6881
PEER_ID_PREFIX = "-TT0001-"


def random_peer_id() -> bytes:
    suffix_len = 20 - len(PEER_ID_PREFIX)
    suffix = "".join(random.choice("0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ") for _ in range(suffix_len))
    return (PEER_ID_PREFIX + suffix).encode("ascii")


def _peer_id(args) -> bytes:
    if args.peer_id is None:
        return random_peer_id()
    peer_id = args.peer_id.encode("utf-8")
    if len(peer_id) != 20:
        raise SystemExit("error: --peer-id must be exactly 20 bytes")
    return peer_id


def _find_peers(meta, args, peer_id):
    response = tracker.announce(meta, peer_id, args.port, timeout=args.timeout)
    if not response.peers:
        raise TorrentError("Tracker returned no peers")
    return response.peers


def cmd_decode(args):
    decoded = bencode_codec.decode(args.value.encode("utf-8"))
    print(json.dumps(bencode_codec.to_json_compatible(decoded)))


def cmd_info(args):
    meta = TorrentMetadata.from_file(args.torrent)
    print(f"Tracker URL: {meta.announce}")
    print(f"Length: {meta.length}")
    print(f"Info Hash: {meta.info_hash_hex}")
    print(f"Piece Length: {meta.piece_length}")
    print("Piece Hashes:")
    for piece_hash in meta.piece_hashes:
        print(piece_hash.hex())


def cmd_peers(args):
    meta = TorrentMetadata.from_file(args.torrent)
    for peer in _find_peers(meta, args, _peer_id(args)):
        print(peer)


def cmd_handshake(args):
    meta = TorrentMetadata.from_file(args.torrent)
    peer = tracker.Peer.from_string(args.peer)
    with PeerConnection.open(peer, timeout=args.timeout) as conn:
        reply = conn.handshake(meta.info_hash, _peer_id(args))
    print(f"Peer ID: {reply.peer_id.hex()}")


def cmd_download_piece(args):
    meta = TorrentMetadata.from_file(args.torrent)
    meta.piece_size(args.index)  # IndexError before we touch the network
    peer_id = _peer_id(args)
    peers = _find_peers(meta, args, peer_id)

    # Try each peer in turn until one hands over a verified piece.
    last_error = None
    for peer in peers:
        try:
            with PeerConnection.open(peer, timeout=args.timeout) as conn:
                conn.handshake(meta.info_hash, peer_id)
                data = download_piece(conn, meta, args.index, pipeline=args.pipeline)
            break
        except (TorrentError, OSError) as e:
            log.warning("Failed to download piece %d from %s: %s", args.index, peer, e)
            last_error = e
    else:
        raise last_error

    with open(args.output, "wb") as f:
        f.write(data)
    print(f"Piece {args.index} downloaded to {args.output}.")


def cmd_download(args):
    meta = TorrentMetadata.from_file(args.torrent)
    log.info("Loaded torrent: %r", meta)
    peer_id = _peer_id(args)
    peers = _find_peers(meta, args, peer_id)

    # Nothing appears at args.output unless every piece was written
    partial = args.output + ".part"
    try:
        with open(partial, "wb") as f:
            download_file(
                meta,
                peers,
                peer_id,
                f,
                max_connections=args.connections,
                max_attempts=args.max_attempts,
                pipeline=args.pipeline,
                timeout=args.timeout,
            )
        os.replace(partial, args.output)
    finally:
        if os.path.exists(partial):
            os.remove(partial)
    print(f"Downloaded {args.torrent} to {args.output}.")


def build_parser():
    parser = argparse.ArgumentParser(prog="tinytorrent", description="A small BitTorrent client.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for progress, -vv for wire traffic")

    network = argparse.ArgumentParser(add_help=False)
    network.add_argument("--port", type=int, default=DEFAULT_PORT, help="port reported to the tracker")
    network.add_argument("--peer-id", default=None, help="20-byte client id (random by default)")
    network.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="socket/tracker timeout in seconds")
    network.add_argument("--pipeline", type=int, default=DEFAULT_PIPELINE, help="block requests in flight per peer")

    commands = parser.add_subparsers(dest="command", required=True)

    p = commands.add_parser("decode", help="decode a bencoded value and print it as JSON")
    p.add_argument("value")
    p.set_defaults(func=cmd_decode)

    p = commands.add_parser("info", help="print the contents of a .torrent file")
    p.add_argument("torrent")
    p.set_defaults(func=cmd_info)

    p = commands.add_parser("peers", parents=[network], help="ask the tracker for peers")
    p.add_argument("torrent")
    p.set_defaults(func=cmd_peers)

    p = commands.add_parser("handshake", parents=[network], help="handshake with one peer")
    p.add_argument("torrent")
    p.add_argument("peer", help="ip:port")
    p.set_defaults(func=cmd_handshake)

    p = commands.add_parser("download_piece", parents=[network], help="download and verify a single piece")
    p.add_argument("-o", "--output", required=True)
    p.add_argument("torrent")
    p.add_argument("index", type=int)
    p.set_defaults(func=cmd_download_piece)

    p = commands.add_parser("download", parents=[network], help="download the whole file")
    p.add_argument("-o", "--output", required=True)
    p.add_argument("torrent")
    p.add_argument("--connections", type=int, default=DEFAULT_MAX_CONNECTIONS, help="peers to download from at once")
    p.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS, help="tries per piece before giving up")
    p.set_defaults(func=cmd_download)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="[%(name)s] %(message)s")

    try:
        args.func(args)
    except (TorrentError, OSError, ValueError, IndexError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
