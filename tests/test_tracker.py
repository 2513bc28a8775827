from unittest import mock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

import bencode_codec
from errors import InvalidLength, MalformedEncoding, TrackerError
from torrent_metadata import TorrentMetadata
from tracker import Peer, announce, build_announce_url, parse_announce_response, parse_peers

PEER_ID = b"-TT0001-localpeer001"


@pytest.fixture
def meta(sample_torrent):
    return TorrentMetadata.from_bytes(sample_torrent)


def test_parse_peers():
    raw = bytes([165, 232, 41, 73, 0xC8, 0xD5, 10, 0, 0, 1, 0x1A, 0xE1])
    assert parse_peers(raw) == [Peer("165.232.41.73", 51413), Peer("10.0.0.1", 6881)]


def test_parse_peers_empty():
    assert parse_peers(b"") == []


@pytest.mark.parametrize("length", [1, 5, 7, 13])
def test_parse_peers_bad_length(length):
    with pytest.raises(InvalidLength) as excinfo:
        parse_peers(bytes(length))
    assert excinfo.value.length == length


def test_peer_from_string():
    assert Peer.from_string("127.0.0.1:6881") == Peer("127.0.0.1", 6881)
    assert str(Peer("127.0.0.1", 6881)) == "127.0.0.1:6881"
    with pytest.raises(ValueError):
        Peer.from_string("127.0.0.1")


def test_build_announce_url(meta):
    url = build_announce_url(meta, PEER_ID, 6881)
    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == meta.announce

    query = parse_qs(parsed.query, encoding="latin-1")
    assert query["info_hash"][0].encode("latin-1") == meta.info_hash
    assert query["peer_id"] == [PEER_ID.decode()]
    assert query["port"] == ["6881"]
    assert query["uploaded"] == ["0"]
    assert query["downloaded"] == ["0"]
    assert query["left"] == [str(meta.length)]
    assert query["compact"] == ["1"]


def test_parse_announce_response():
    body = bencode_codec.encode(
        {b"interval": 60, b"complete": 3, b"incomplete": 1, b"peers": bytes([127, 0, 0, 1, 0x1A, 0xE1])}
    )
    response = parse_announce_response(body)
    assert response.interval == 60
    assert response.complete == 3
    assert response.incomplete == 1
    assert response.peers == [Peer("127.0.0.1", 6881)]


def test_parse_announce_response_default_interval():
    response = parse_announce_response(b"d5:peers0:e")
    assert response.interval == 1800
    assert response.peers == []


def test_failure_reason():
    with pytest.raises(TrackerError, match="unregistered torrent"):
        parse_announce_response(b"d14:failure reason20:unregistered torrente")


def test_missing_peers():
    with pytest.raises(TrackerError):
        parse_announce_response(b"d8:intervali60ee")


def test_garbage_body():
    with pytest.raises(MalformedEncoding):
        parse_announce_response(b"<html>")


def test_announce(meta):
    body = bencode_codec.encode({b"interval": 30, b"peers": bytes([127, 0, 0, 1, 0x1A, 0xE1])})
    fake_response = mock.Mock(content=body)
    with mock.patch("tracker.requests.get", return_value=fake_response) as get:
        response = announce(meta, PEER_ID, 6881, timeout=3)

    url = get.call_args[0][0]
    assert url == build_announce_url(meta, PEER_ID, 6881)
    assert get.call_args[1]["timeout"] == 3
    fake_response.raise_for_status.assert_called_once_with()
    assert response.peers == [Peer("127.0.0.1", 6881)]


def test_announce_transport_error(meta):
    with mock.patch("tracker.requests.get", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(TrackerError):
            announce(meta, PEER_ID, 6881)


def test_announce_http_error(meta):
    fake_response = mock.Mock()
    fake_response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
    with mock.patch("tracker.requests.get", return_value=fake_response):
        with pytest.raises(TrackerError):
            announce(meta, PEER_ID, 6881)
