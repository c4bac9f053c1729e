"""Pytest configuration and fixtures."""

# Standard library imports
import hashlib
from collections.abc import Callable, Sequence
from pathlib import Path

# Third-party imports
import bencodepy
import pytest

PIECE_LENGTH = 1024

TorrentFactory = Callable[..., Path]


def make_content(length: int, seed: int) -> bytes:
    """Return deterministic, non-repeating-looking content of the given length."""
    return bytes((i * 7 + seed * 31 + (i // 251)) % 256 for i in range(length))


def piece_hashes(data: bytes, piece_length: int) -> list[bytes]:
    """Split data into pieces (the last one may be short) and hash each."""
    return [hashlib.sha1(data[i : i + piece_length]).digest() for i in range(0, len(data), piece_length)]


@pytest.fixture
def torrent_factory(tmp_path: Path) -> TorrentFactory:
    """Return a function writing a .torrent file for the given payload.

    Pass ``content`` for a single-file torrent or ``files`` (a sequence of
    ``(relative path, bytes)``) for a multi-file torrent.
    """

    def _make(
        name: str,
        *,
        content: bytes | None = None,
        files: Sequence[tuple[str, bytes]] | None = None,
        piece_length: int = PIECE_LENGTH,
    ) -> Path:
        info: dict[bytes, object] = {b"name": name.encode(), b"piece length": piece_length}
        if files is not None:
            info[b"files"] = [{b"path": [p.encode() for p in path.split("/")], b"length": len(data)} for path, data in files]
            combined = b"".join(data for _, data in files)
        else:
            assert content is not None
            info[b"length"] = len(content)
            combined = content
        info[b"pieces"] = b"".join(piece_hashes(combined, piece_length))

        torrent_path = tmp_path / f"{name}.torrent"
        torrent_path.write_bytes(bencodepy.encode({b"info": info}))
        return torrent_path

    return _make


@pytest.fixture
def multi_file_payload() -> list[tuple[str, bytes]]:
    """Three files whose boundaries fall inside pieces of 1024 bytes.

    alpha: 2560 bytes -> pieces 0 and 1, piece 2 straddles into beta
    beta:  2304 bytes -> piece 3 at offset 512, piece 4 straddles into gamma
    gamma: 3328 bytes -> pieces 5, 6 and 7 at offsets 256, 1280 and 2304
    """
    return [
        ("alpha.bin", make_content(2560, 1)),
        ("sub/beta.bin", make_content(2304, 2)),
        ("sub/deeper/gamma.bin", make_content(3328, 3)),
    ]


@pytest.fixture
def multi_file_torrent(torrent_factory: TorrentFactory, multi_file_payload: list[tuple[str, bytes]]) -> Path:
    """Create a multi-file torrent for the standard payload."""
    return torrent_factory("rescue_me", files=multi_file_payload)


@pytest.fixture
def scrambled_payload(tmp_path: Path, multi_file_payload: list[tuple[str, bytes]]) -> Path:
    """Store the payload under unrelated names, next to a same-size decoy."""
    root = tmp_path / "scrambled"
    (root / "x" / "y").mkdir(parents=True)
    (root / "z").mkdir()
    (root / "x" / "first.dat").write_bytes(multi_file_payload[0][1])
    (root / "x" / "y" / "second.dat").write_bytes(multi_file_payload[1][1])
    (root / "z" / "third.dat").write_bytes(multi_file_payload[2][1])
    (root / "z" / "decoy.dat").write_bytes(make_content(2560, 99))
    (root / "unrelated.txt").write_bytes(b"nothing to see here")
    return root


@pytest.fixture
def single_file_torrent(torrent_factory: TorrentFactory, tmp_path: Path) -> tuple[Path, Path]:
    """Create a four-piece single-file torrent and store its data under another name."""
    content = make_content(4 * PIECE_LENGTH, 7)
    torrent_path = torrent_factory("movie.mkv", content=content)

    downloads = tmp_path / "downloads"
    downloads.mkdir()
    payload = downloads / "renamed_movie.bin"
    payload.write_bytes(content)
    return torrent_path, payload
