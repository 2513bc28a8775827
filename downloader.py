#!/usr/bin/env python3
import hashlib
import logging
import queue
import threading
from collections import deque, namedtuple

from errors import DownloadFailed, IntegrityError, TorrentError, UnexpectedBlock
from file_manager import PieceWriter
from peer import MESSAGE_BITFIELD, MESSAGE_PIECE, MESSAGE_UNCHOKE, PeerConnection, unpack_piece

log = logging.getLogger(__name__)

BLOCK_SIZE = 16 * 1024
DEFAULT_PIPELINE = 5  # requests kept in flight per connection
DEFAULT_MAX_ATTEMPTS = 5  # per piece, across all peers
DEFAULT_MAX_CONNECTIONS = 4
DEFAULT_MAX_RECONNECTS = 3  # consecutive failures before a worker gives up on its peer
DEFAULT_TIMEOUT = 10.0
RECONNECT_DELAY = 0.5  # seconds, multiplied by the failure count

_POLL_INTERVAL = 0.1

_Result = namedtuple("_Result", "index data error")
_WORKER_EXITED = _Result(None, None, None)


def block_ranges(piece_size, block_size=BLOCK_SIZE):
    """Split a piece into (offset, length) blocks; the last one may be short."""
    return [
        (offset, min(block_size, piece_size - offset))
        for offset in range(0, piece_size, block_size)
    ]


def prepare_connection(connection):
    """Wait for bitfield, say we are interested, wait for unchoke."""
    connection.expect(MESSAGE_BITFIELD)
    connection.send_interested()
    connection.expect(MESSAGE_UNCHOKE)
    connection.unchoked = True
    log.debug("Unchoked by %s", connection.remote_addr)


def verify_piece(metadata, index, data):
    expected = metadata.piece_hashes[index]
    actual = hashlib.sha1(data).digest()
    if actual != expected:
        raise IntegrityError(index, expected, actual)


def download_piece(connection, metadata, index, pipeline=DEFAULT_PIPELINE, block_size=BLOCK_SIZE):
    """Download one piece over a handshaken connection and return its verified bytes.

    The bitfield/interested/unchoke exchange only happens the first time a
    connection is used, so the same connection can fetch many pieces.
    Up to `pipeline` block requests are in flight at once; pipeline=1 sends
    each request only after the previous block has arrived.
    """
    if pipeline < 1:
        raise ValueError("pipeline must be at least 1")
    piece_size = metadata.piece_size(index)

    if not connection.unchoked:
        prepare_connection(connection)

    buffer = bytearray(piece_size)
    pending = deque(block_ranges(piece_size, block_size))
    outstanding = {}  # offset -> requested length

    while pending or outstanding:
        while pending and len(outstanding) < pipeline:
            begin, length = pending.popleft()
            connection.send_request(index, begin, length)
            outstanding[begin] = length
            log.debug("Requested piece %d block %d (+%d)", index, begin, length)

        message = connection.expect(MESSAGE_PIECE)
        got_index, begin, block = unpack_piece(message.payload)
        if got_index != index or begin not in outstanding:
            raise UnexpectedBlock(
                MESSAGE_PIECE,
                f"Got block {begin} of piece {got_index}, which was not requested"
            )
        if len(block) != outstanding[begin]:
            raise UnexpectedBlock(
                MESSAGE_PIECE,
                f"Block {begin} of piece {index} has {len(block)} bytes, "
                f"requested {outstanding[begin]}"
            )
        del outstanding[begin]
        buffer[begin:begin + len(block)] = block

    data = bytes(buffer)
    verify_piece(metadata, index, data)
    log.info("Piece %d verified (%d bytes)", index, piece_size)
    return data


class PeerWorker(threading.Thread):
    """Keeps one connection to one peer and downloads pieces claimed from the manager."""

    def __init__(self, manager, peer):
        super().__init__(daemon=True, name=f"peer-{peer}")
        self.manager = manager
        self.peer = peer
        self.connection = None
        self._lock = threading.Lock()
        self._claimed = None

    def run(self):
        failures = 0
        try:
            while not self.manager.stopped:
                connection = self.connection
                if connection is None:
                    try:
                        connection = self._connect()
                    except (TorrentError, OSError) as e:
                        failures += 1
                        log.warning("Could not connect to %s: %s", self.peer, e)
                        if failures >= self.manager.max_reconnects:
                            break
                        self.manager.wait(RECONNECT_DELAY * failures)
                        continue

                index = self.manager.claim()
                if index is None:
                    break
                self._claimed = index

                try:
                    data = download_piece(
                        connection, self.manager.metadata, index, pipeline=self.manager.pipeline
                    )
                except (TorrentError, OSError) as e:
                    log.warning("Piece %d from %s failed: %s", index, self.peer, e)
                    self._claimed = None
                    self.manager.release(index, e)
                    self.close()
                    failures += 1
                    if failures >= self.manager.max_reconnects:
                        break
                    continue

                self._claimed = None
                failures = 0
                self.manager.complete(index, data)
        finally:
            if self._claimed is not None:
                self.manager.release(self._claimed, None)
            self.close()
            self.manager.worker_exited(self)

    def _connect(self):
        connection = self.manager.connect(self.peer, self.manager.timeout)
        try:
            connection.handshake(self.manager.metadata.info_hash, self.manager.peer_id)
        except TorrentError:
            connection.close()
            raise
        with self._lock:
            self.connection = connection
        return connection

    def close(self):
        """Drop the connection. Safe to call from another thread."""
        with self._lock:
            connection, self.connection = self.connection, None
        if connection is not None:
            connection.close()


class DownloadManager:
    """Downloads every piece from a set of peers and writes them in order to sink.

    One PeerWorker thread per peer pulls piece indices from a shared queue.
    Verified pieces come back through a results queue to the thread calling
    run(), which is the only one that writes to the sink.
    """

    def __init__(
        self,
        metadata,
        peers,
        peer_id,
        sink,
        max_connections=DEFAULT_MAX_CONNECTIONS,
        max_attempts=DEFAULT_MAX_ATTEMPTS,
        max_reconnects=DEFAULT_MAX_RECONNECTS,
        pipeline=DEFAULT_PIPELINE,
        timeout=DEFAULT_TIMEOUT,
        connect=None,
    ):
        self.metadata = metadata
        self.peers = list(peers)
        self.max_connections = max_connections
        self.peer_id = peer_id
        self.writer = PieceWriter(metadata, sink)
        self.max_attempts = max_attempts
        self.max_reconnects = max_reconnects
        self.pipeline = pipeline
        self.timeout = timeout
        self.connect = connect or PeerConnection.open

        self.attempts = {}
        self._work = queue.Queue()
        self._results = queue.Queue()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._workers = []

    @property
    def stopped(self):
        return self._stop.is_set()

    def wait(self, seconds):
        self._stop.wait(seconds)

    # Called from worker threads ------

    def claim(self):
        """Block until a piece index is available; None once the download is over."""
        while not self._stop.is_set():
            try:
                return self._work.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
        return None

    def release(self, index, error):
        """Give a failed piece back. It is retried until max_attempts is reached."""
        with self._lock:
            if error is None:
                # The worker went away before trying; not an attempt.
                self._work.put(index)
                return
            attempts = self.attempts.get(index, 0) + 1
            self.attempts[index] = attempts

        if attempts >= self.max_attempts:
            self._results.put(_Result(index, None, DownloadFailed(index, attempts, error)))
        else:
            log.info("Retrying piece %d (attempt %d/%d)", index, attempts + 1, self.max_attempts)
            self._work.put(index)

    def complete(self, index, data):
        self._results.put(_Result(index, data, None))

    def worker_exited(self, worker):
        log.info("Worker for %s exited", worker.peer)
        self._results.put(_WORKER_EXITED)

    # Called from the writer thread ------

    def run(self):
        """Download the whole file. Returns the PieceWriter once every piece is written."""
        if self.writer.complete:
            return self.writer
        if not self.peers:
            raise DownloadFailed(0, 0, "no peers to download from")

        for index in range(self.metadata.num_pieces):
            self._work.put(index)

        # Peers beyond max_connections take over from workers that give up
        spare = deque(self.peers)
        live = 0
        while spare and live < self.max_connections:
            self._start_worker(spare.popleft())
            live += 1

        try:
            while not self.writer.complete:
                result = self._results.get()
                if result is _WORKER_EXITED:
                    if spare:
                        self._start_worker(spare.popleft())
                        continue
                    live -= 1
                    if live == 0:
                        index = self.writer.next_index
                        raise DownloadFailed(
                            index, self.attempts.get(index, 0), "no peers left to download from"
                        )
                    continue
                if result.error is not None:
                    raise result.error
                self.writer.add(result.index, result.data)
                log.info(
                    "Progress: %d/%d pieces written",
                    self.writer.next_index,
                    self.metadata.num_pieces,
                )
        finally:
            self.shutdown()

        return self.writer

    def _start_worker(self, peer):
        worker = PeerWorker(self, peer)
        self._workers.append(worker)
        worker.start()

    def shutdown(self):
        self._stop.set()
        for worker in self._workers:
            worker.close()
        for worker in self._workers:
            worker.join(timeout=self.timeout)


def download_file(metadata, peers, peer_id, sink, **options):
    """Download the torrent's file from peers into sink; returns bytes written."""
    manager = DownloadManager(metadata, peers, peer_id, sink, **options)
    return manager.run().bytes_written
