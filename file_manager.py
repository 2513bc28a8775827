# file_manager.py
import logging

log = logging.getLogger(__name__)


class PieceWriter:
    """
    Writes verified pieces of a single-file torrent to a binary sink,
    strictly in ascending piece order.
    """

    def __init__(self, metadata, sink):
        """
        :param metadata: Parsed TorrentMetadata for this torrent.
        :param sink: Anything with a write(bytes) method (file, BytesIO, ...).
        """
        self.meta = metadata
        self.sink = sink

        self.num_pieces = metadata.num_pieces
        self.next_index = 0
        self.bytes_written = 0

        # Pieces that arrived before the ones in front of them
        self._pending = {}

    @property
    def complete(self):
        return self.next_index >= self.num_pieces

    @property
    def pending_count(self):
        return len(self._pending)

    def add(self, index, data):
        """
        Accept a verified piece and write out everything that is now contiguous.
        Returns the number of pieces written by this call.
        """
        if not (0 <= index < self.num_pieces):
            raise ValueError(f"Piece index {index} out of range 0..{self.num_pieces - 1}")
        if index < self.next_index or index in self._pending:
            raise ValueError(f"Piece {index} was already received")

        expected = self.meta.piece_size(index)
        if len(data) != expected:
            raise ValueError(
                f"Piece {index} wrong length: got {len(data)}, expected {expected}"
            )

        self._pending[index] = data
        return self._flush()

    def _flush(self):
        written = 0
        while self.next_index in self._pending:
            data = self._pending.pop(self.next_index)
            self.sink.write(data)
            self.bytes_written += len(data)
            log.debug("Wrote piece %d (%d bytes)", self.next_index, len(data))
            self.next_index += 1
            written += 1
        return written
