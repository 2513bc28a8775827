# torrent_metadata.py
import hashlib
from dataclasses import dataclass
from typing import Optional

import bencode_codec
from errors import InvalidPieceTable, MalformedEncoding, MissingField

HASH_LENGTH = 20


def _require(mapping, key, kind, label):
    value = mapping.get(key)
    if value is None:
        raise MissingField(label)
    # bool is an int subclass
    if not isinstance(value, kind) or isinstance(value, bool):
        raise MissingField(label, expected=kind.__name__)
    return value


@dataclass(frozen=True)
class TorrentMetadata:
    announce: str
    length: int
    piece_length: int
    piece_hashes: tuple
    info_hash: bytes
    name: Optional[str] = None

    @classmethod
    def from_bytes(cls, raw):
        """Parse the raw contents of a single-file .torrent."""
        meta = bencode_codec.decode(raw)
        if not isinstance(meta, dict):
            raise MalformedEncoding("Torrent file is not a dictionary", 0)

        # Most keys are bytes
        announce = _require(meta, b"announce", bytes, "announce")
        try:
            announce = announce.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MissingField("announce", expected="a UTF-8 URL") from e
        info = _require(meta, b"info", dict, "info")

        # Compute info_hash over the canonical (sorted-key) encoding of info
        info_hash = hashlib.sha1(bencode_codec.encode(info)).digest()

        length = _require(info, b"length", int, "info.length")
        piece_length = _require(info, b"piece length", int, "info.piece length")
        pieces_blob = _require(info, b"pieces", bytes, "info.pieces")

        if piece_length <= 0:
            raise InvalidPieceTable(f"Invalid piece length {piece_length}")
        if length < 0:
            raise InvalidPieceTable(f"Invalid total length {length}")

        # Extract piece hashes (20 bytes each)
        if len(pieces_blob) % HASH_LENGTH != 0:
            raise InvalidPieceTable(
                f"Invalid 'pieces' field: {len(pieces_blob)} bytes is not divisible by {HASH_LENGTH}"
            )
        piece_hashes = tuple(
            pieces_blob[i:i + HASH_LENGTH] for i in range(0, len(pieces_blob), HASH_LENGTH)
        )

        expected_count = -(-length // piece_length)
        if len(piece_hashes) != expected_count:
            raise InvalidPieceTable(
                f"Torrent has {len(piece_hashes)} piece hashes, "
                f"expected {expected_count} for {length} bytes"
            )

        name = info.get(b"name")
        if isinstance(name, bytes):
            name = name.decode("utf-8", errors="replace")
        else:
            name = None

        return cls(
            announce=announce,
            length=length,
            piece_length=piece_length,
            piece_hashes=piece_hashes,
            info_hash=info_hash,
            name=name,
        )

    @classmethod
    def from_file(cls, torrent_path):
        with open(torrent_path, "rb") as f:
            raw = f.read()
        return cls.from_bytes(raw)

    @property
    def info_hash_hex(self) -> str:
        return self.info_hash.hex()

    @property
    def num_pieces(self) -> int:
        return len(self.piece_hashes)

    def _check_index(self, index):
        if not (0 <= index < self.num_pieces):
            raise IndexError(f"Piece index {index} out of range 0..{self.num_pieces - 1}")

    def piece_size(self, index: int) -> int:
        """Length of the given piece. The last piece may be shorter."""
        self._check_index(index)
        if index == self.num_pieces - 1:
            remainder = self.length % self.piece_length
            if remainder:
                return remainder
        return self.piece_length

    def piece_offset(self, index: int) -> int:
        self._check_index(index)
        return index * self.piece_length

    def __repr__(self):
        return (
            f"TorrentMetadata(name={self.name!r}, length={self.length}, "
            f"piece_length={self.piece_length}, num_pieces={self.num_pieces})"
        )
