# bencode_codec.py
"""Bencode encoder/decoder.

Decoded values are plain Python objects:

    bytes           for byte-strings
    int             for integers
    list            for lists
    dict[bytes, *]  for dictionaries

Encoding always writes dictionary keys in ascending byte order, so the
result is canonical and can be hashed (the info hash depends on it).
"""
from typing import Union

from errors import MalformedEncoding

BencodeValue = Union[bytes, int, list, dict]

_DIGITS = b"0123456789"
MAX_DEPTH = 256  # nested lists/dicts accepted before giving up


def decode(data) -> BencodeValue:
    """Decode a complete bencoded buffer. Trailing bytes are an error."""
    data = bytes(data)
    value, end = decode_value(data, 0)
    if end != len(data):
        raise MalformedEncoding(
            f"{len(data) - end} trailing byte(s) after bencoded value", end
        )
    return value


def decode_value(data: bytes, offset: int = 0):
    """Decode the value starting at offset and return (value, next_offset)."""
    return _decode(data, offset, 0)


def _decode(data, offset, depth):
    if offset >= len(data):
        raise MalformedEncoding("Unexpected end of data", offset)

    lead = data[offset]
    if lead in _DIGITS:
        return _decode_string(data, offset)
    if lead == ord("i"):
        return _decode_int(data, offset)
    if lead == ord("l"):
        return _decode_list(data, offset, depth + 1)
    if lead == ord("d"):
        return _decode_dict(data, offset, depth + 1)
    raise MalformedEncoding(f"Unexpected byte {bytes([lead])!r}", offset)


def _read_digits(data, offset):
    end = offset
    while end < len(data) and data[end] in _DIGITS:
        end += 1
    return end


def _decode_string(data, offset):
    colon = _read_digits(data, offset)
    if colon >= len(data) or data[colon] != ord(":"):
        raise MalformedEncoding("Expected ':' after string length", colon)

    length = int(data[offset:colon])
    start = colon + 1
    end = start + length
    if end > len(data):
        raise MalformedEncoding(
            f"String of length {length} runs past end of data", offset
        )
    return data[start:end], end


def _decode_int(data, offset):
    start = offset + 1
    pos = start
    if pos < len(data) and data[pos] == ord("-"):
        pos += 1

    end = _read_digits(data, pos)
    if end == pos:
        raise MalformedEncoding("Integer has no digits", pos)
    if end >= len(data) or data[end] != ord("e"):
        raise MalformedEncoding("Expected 'e' to end integer", end)

    return int(data[start:end]), end + 1


def _check_depth(depth, offset):
    if depth > MAX_DEPTH:
        raise MalformedEncoding(f"Nesting deeper than {MAX_DEPTH} levels", offset)


def _decode_list(data, offset, depth):
    _check_depth(depth, offset)
    items = []
    pos = offset + 1
    while True:
        if pos >= len(data):
            raise MalformedEncoding("Unterminated list", offset)
        if data[pos] == ord("e"):
            return items, pos + 1
        item, pos = _decode(data, pos, depth)
        items.append(item)


def _decode_dict(data, offset, depth):
    _check_depth(depth, offset)
    result = {}
    pos = offset + 1
    while True:
        if pos >= len(data):
            raise MalformedEncoding("Unterminated dictionary", offset)
        if data[pos] == ord("e"):
            return result, pos + 1

        key_offset = pos
        key, pos = _decode(data, pos, depth)
        if not isinstance(key, bytes):
            raise MalformedEncoding("Dictionary key is not a string", key_offset)

        # Repeated keys: the last value wins.
        result[key], pos = _decode(data, pos, depth)


def encode(value) -> bytes:
    """Bencode a value. Dictionary keys are written in sorted byte order."""
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value, out):
    # bool is a subclass of int but has no bencode form.
    if isinstance(value, bool):
        raise TypeError("Cannot bencode a bool")

    if isinstance(value, int):
        out += b"i%de" % value
    elif isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value)
        out += b"%d:" % len(value)
        out += value
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8"), out)
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        out += b"d"
        for key, item in sorted(_dict_items(value), key=lambda pair: pair[0]):
            _encode_into(key, out)
            _encode_into(item, out)
        out += b"e"
    else:
        raise TypeError(f"Unsupported type for bencoding: {type(value).__name__}")


def _dict_items(value):
    for key, item in value.items():
        if isinstance(key, str):
            key = key.encode("utf-8")
        elif not isinstance(key, bytes):
            raise TypeError(f"Dictionary keys must be strings, not {type(key).__name__}")
        yield key, item


def to_json_compatible(value):
    """Turn a decoded value into something json.dumps() accepts.

    Byte-strings become text when they are valid UTF-8 and hex otherwise
    (piece tables, compact peer lists).
    """
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    if isinstance(value, list):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, dict):
        return {
            to_json_compatible(key): to_json_compatible(item)
            for key, item in value.items()
        }
    return value
