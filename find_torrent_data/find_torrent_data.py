#!/usr/bin/env python3
"""Find the files belonging to a torrent and rebuild its layout with links.

This module locates, among arbitrary directory trees, the files described by a
.torrent file and prepares an output directory of hard or symbolic links that
reproduces the torrent's layout. Candidate files are first matched by size and
then confirmed by re-hashing a configurable fraction of their pieces, so data
whose original folder structure was lost can be reused without copying bytes.
"""

import hashlib
import os
import stat
import sys
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Protocol, TypeAlias, cast, runtime_checkable

import bencodepy
from tqdm import tqdm


@runtime_checkable
class _ProgressBar(Protocol):
    """Protocol for progress bar implementations."""

    def update(self, n: int) -> None:
        """Update progress by n scanned files."""
        ...

    def set_postfix(self, **kwargs: object) -> None:
        """Set postfix text."""
        ...

    def write(self, msg: str, file: Any = None) -> None:
        """Write a message."""
        ...

    def __enter__(self) -> "_ProgressBar":
        """Context manager entry."""
        ...

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        ...


# Simple progress indicator for --no-progress option
class SimpleProgress:
    def __init__(self) -> None:
        self.current = 0

    def __enter__(self) -> "SimpleProgress":
        return self

    def __exit__(self, *args: object) -> None:
        _ = args  # Mark as intentionally unused
        pass

    def update(self, n: int) -> None:
        self.current += n

    def set_postfix(self, **kwargs: object) -> None:
        _ = kwargs  # Mark as intentionally unused
        pass

    def write(self, msg: str, file: Any = None) -> None:
        print(msg, file=file)


# Constants
KB = 1024
MB = KB * 1024

SHA1_LENGTH = 20
HASH_CHUNK_SIZE = MB
MAX_DISPLAY_FILENAME_LENGTH = 20
PADDING_FILE_PREFIX = "_____padding_file_"

# Type aliases

StrPath: TypeAlias = str | os.PathLike[str]
BytesOrStrPath: TypeAlias = bytes | StrPath
TorrentInfo = Mapping[bytes, Any]
ErrorHandler = Callable[[str], None]


class TorrentError(Exception):
    """Base exception for torrent-related errors."""

    pass


@dataclass(frozen=True)
class TorrentFile:
    """One entry of a multi-file torrent's file list."""

    path: tuple[str, ...]
    length: int
    padding: bool = False


@dataclass(frozen=True)
class TorrentMetadata:
    """The parts of a torrent's info dictionary needed to locate its data.

    ``length`` is set for single-file torrents and ``files`` for multi-file
    torrents; exactly one of them is ``None``.
    """

    name: str
    piece_length: int
    pieces: tuple[bytes, ...]
    length: int | None = None
    files: tuple[TorrentFile, ...] | None = None

    @property
    def is_multi_file(self) -> bool:
        return self.files is not None


@dataclass(frozen=True)
class Extent:
    """A piece-sized byte range of a target file and its expected SHA-1 digest."""

    offset: int
    size: int
    hash: bytes


def hash_range(stream: BinaryIO, offset: int, size: int) -> tuple[bytes, int]:
    """Hash a bounded byte range of a seekable stream.

    Args:
        stream: Binary stream opened for reading
        offset: Position of the first byte to hash
        size: Maximum number of bytes to hash

    Returns:
        Tuple of (SHA-1 digest, number of bytes actually hashed). The count is
        smaller than ``size`` when the stream ends early.

    Raises:
        OSError: If seeking or reading fails

    """
    stream.seek(offset)
    state = hashlib.sha1()
    remaining = size
    while remaining > 0:
        chunk = stream.read(min(remaining, HASH_CHUNK_SIZE))
        if not chunk:
            break
        state.update(chunk)
        remaining -= len(chunk)
    return state.digest(), size - remaining


@dataclass(frozen=True)
class Descriptor:
    """Expected identity of one target file: where it goes, its size and piece hashes."""

    path: Path
    size: int
    extents: tuple[Extent, ...]

    def verify_file(self, stream: BinaryIO, threshold: float) -> bool:
        """Verify a file's content against the extent hashes of this descriptor.

        Only the first ``floor(len(extents) * threshold)`` extents are checked,
        in order. A threshold of 0.5 means the first half must match; 0.0
        accepts any file without reading it.

        Args:
            stream: Candidate file opened in binary mode
            threshold: Fraction of extents to check, expected in [0.0, 1.0]

        Returns:
            bool: True if every checked extent matched

        Raises:
            OSError: If the candidate cannot be read

        """
        count = int(len(self.extents) * threshold)
        for extent in self.extents[:count]:
            digest, bytes_hashed = hash_range(stream, extent.offset, extent.size)
            if bytes_hashed != extent.size:
                return False
            if digest != extent.hash:
                return False
        return True


class DescriptorIndex:
    """Read-only lookup from file size to every descriptor of that size."""

    def __init__(self, by_size: Mapping[int, Sequence[Descriptor]]) -> None:
        self._by_size = {size: tuple(descriptors) for size, descriptors in by_size.items()}

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[Descriptor]) -> "DescriptorIndex":
        by_size: dict[int, list[Descriptor]] = {}
        for descriptor in descriptors:
            by_size.setdefault(descriptor.size, []).append(descriptor)
        return cls(by_size)

    def get(self, size: int) -> tuple[Descriptor, ...]:
        """Return the descriptors of the given size in build order (empty if none)."""
        return self._by_size.get(size, ())


@dataclass(frozen=True)
class Match:
    """A file found on disk (``is_path``) and where the torrent wants it (``want_path``)."""

    is_path: Path
    want_path: Path
    size: int = 0

    def link(self, symlink: bool) -> None:
        """Create the destination link, making missing parent directories.

        Symbolic links point at the absolute source path so they stay valid
        wherever the output directory lives.

        Raises:
            OSError: If the directories or the link cannot be created

        """
        self.want_path.parent.mkdir(parents=True, exist_ok=True)
        if symlink:
            os.symlink(os.path.abspath(self.is_path), self.want_path)
        else:
            os.link(self.is_path, self.want_path)


@dataclass(frozen=True)
class SearchContext:
    """Configuration shared by every directory walk of a run."""

    index: DescriptorIndex
    follow_symlinks: bool = False
    create_symlinks: bool = False
    hash_threshold: float = 1.0


@dataclass
class SearchOptions:
    """Options for locating torrent data."""

    follow_symlinks: bool = False
    create_symlinks: bool = False
    hash_threshold: float = 1.0
    dry_run: bool = False
    no_progress: bool = False


@dataclass
class LinkSummary:
    """Outcome of linking the matches of one run."""

    matches: list[Match] = field(default_factory=list)
    failed: int = 0

    @property
    def matched_bytes(self) -> int:
        return sum(match.size for match in self.matches)

    @property
    def linked(self) -> int:
        return len(self.matches) - self.failed


def _coerce_path(path_value: BytesOrStrPath) -> Path:
    """Convert bytes/str/PathLike inputs to a Path."""

    if isinstance(path_value, bytes):
        return Path(os.fsdecode(path_value))
    return Path(path_value)


def _decode_segment(segment: bytes) -> str:
    """Decode one path component, rejecting anything that could leave the output root."""
    text = segment.decode("utf-8")
    if text in ("", ".", "..") or "/" in text or "\\" in text:
        raise TorrentError(f"Invalid path component in torrent: {text!r}")
    return text


def _is_padding_file(file_info: Mapping[bytes, Any], segments: Sequence[str]) -> bool:
    """Return True if a multi-file entry is a BEP47 padding file."""

    attrs = file_info.get(b"attr")
    if isinstance(attrs, bytes) and b"p" in attrs:
        return True
    if isinstance(attrs, str) and "p" in attrs:
        return True
    return bool(segments) and segments[-1].startswith(PADDING_FILE_PREFIX)


def _parse_file_entry(file_info: Mapping[bytes, Any]) -> TorrentFile:
    segments = tuple(_decode_segment(p) for p in file_info[b"path"])
    if not segments:
        raise TorrentError("Invalid torrent info: empty file path")
    length = int(file_info[b"length"])
    if length < 0:
        raise TorrentError(f"Invalid torrent info: negative length for {'/'.join(segments)}")
    return TorrentFile(path=segments, length=length, padding=_is_padding_file(file_info, segments))


def parse_info(info: TorrentInfo) -> TorrentMetadata:
    """Convert a decoded 'info' dictionary into TorrentMetadata.

    Args:
        info: The 'info' dictionary from the torrent file

    Returns:
        TorrentMetadata: Name, piece layout and file list of the torrent

    Raises:
        TorrentError: If the torrent info is invalid

    """
    try:
        name = _decode_segment(info[b"name"])
        piece_length = int(info[b"piece length"])
        pieces = info[b"pieces"]
        if not isinstance(pieces, bytes):
            raise TorrentError("Invalid torrent info: pieces must be a byte string")
        files: tuple[TorrentFile, ...] | None = None
        length: int | None = None
        if b"files" in info:  # Multi-file torrent
            files = tuple(_parse_file_entry(file_info) for file_info in info[b"files"])
        else:  # Single file torrent
            length = int(info[b"length"])
    except (KeyError, TypeError, AttributeError, UnicodeDecodeError, ValueError) as e:
        raise TorrentError("Invalid torrent info") from e

    if piece_length <= 0:
        raise TorrentError(f"Invalid torrent info: piece length {piece_length}")
    if len(pieces) % SHA1_LENGTH:
        raise TorrentError(f"Invalid torrent info: pieces length {len(pieces)} is not a multiple of {SHA1_LENGTH}")

    piece_hashes = tuple(pieces[i : i + SHA1_LENGTH] for i in range(0, len(pieces), SHA1_LENGTH))
    return TorrentMetadata(name=name, piece_length=piece_length, pieces=piece_hashes, length=length, files=files)


def load_torrent(torrent_path: StrPath) -> TorrentMetadata:
    """Read and parse a .torrent file.

    Raises:
        TorrentError: If the file is missing, unreadable or malformed

    """
    torrent_file = Path(torrent_path)
    if not torrent_file.is_file():
        raise TorrentError(f"Torrent file not found: {torrent_path}")

    try:
        with torrent_file.open("rb") as f:
            data = f.read()
    except OSError as e:
        raise TorrentError(f"Error reading torrent file {torrent_path}: {e}") from e

    try:
        metainfo = cast(dict[bytes, Any], bencodepy.decode(data))
        info = cast(TorrentInfo, metainfo[b"info"])
    except Exception as e:
        raise TorrentError(f"Malformed torrent file {torrent_path}: {e}") from e
    if not isinstance(info, Mapping):
        raise TorrentError(f"Malformed torrent file {torrent_path}: info is not a dictionary")
    return parse_info(info)


def _single_file_descriptors(torrent: TorrentMetadata, output_root: Path) -> list[Descriptor]:
    piece_length = torrent.piece_length
    extents = tuple(Extent(offset=i * piece_length, size=piece_length, hash=piece_hash) for i, piece_hash in enumerate(torrent.pieces))
    return [Descriptor(path=output_root / torrent.name, size=torrent.length or 0, extents=extents)]


def _multi_file_descriptors(torrent: TorrentMetadata, output_root: Path) -> list[Descriptor]:
    files = torrent.files or ()
    if not files or not torrent.pieces:
        return []

    dir_path = output_root / torrent.name
    piece_length = torrent.piece_length
    pieces = iter(torrent.pieces)
    descriptors: list[Descriptor] = []
    file_offset = 0  # bytes of the current file already covered by earlier pieces

    for entry in files:
        # File lies entirely inside a piece that started in an earlier file
        if file_offset >= entry.length:
            file_offset -= entry.length
            continue

        extents: list[Extent] = []
        exhausted = False
        while entry.length - file_offset >= piece_length:
            piece_hash = next(pieces, None)
            if piece_hash is None:
                exhausted = True
                break
            extents.append(Extent(offset=file_offset, size=piece_length, hash=piece_hash))
            file_offset += piece_length

        if extents and not entry.padding:
            descriptors.append(Descriptor(path=dir_path.joinpath(*entry.path), size=entry.length, extents=tuple(extents)))
        if exhausted:
            break

        # The piece covering the tail of this file continues into the next one
        remainder = entry.length - file_offset
        if remainder > 0:
            file_offset = piece_length - remainder
            if next(pieces, None) is None:
                break

    return descriptors


def build_descriptors(torrent: TorrentMetadata, output_root: BytesOrStrPath) -> list[Descriptor]:
    """Derive the expected layout and piece checklist of every target file.

    A single-file torrent yields one descriptor holding every piece. In a
    multi-file torrent only whole pieces that lie inside a single file are
    attributed to it; pieces straddling two files are skipped, and files that
    receive no extent get no descriptor and can therefore never be matched. If the torrent lists
    fewer pieces than its files need, construction stops at that point and the
    descriptors built so far are returned.

    Args:
        torrent: Parsed torrent metadata
        output_root: Directory under which the torrent layout is rebuilt

    Returns:
        List of descriptors in torrent file order

    """
    root = _coerce_path(output_root)
    if torrent.is_multi_file:
        return _multi_file_descriptors(torrent, root)
    return _single_file_descriptors(torrent, root)


def human_readable_size(size: int) -> str:
    """Convert size in bytes to human readable format.

    Args:
        size: Size in bytes

    Returns:
        str: Human readable size string (e.g., "1.5 MB")

    """
    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < KB:
            return f"{size_float:3.1f} {unit}"
        size_float /= KB
    return f"{size_float:.1f} PB"


class _Writer(Protocol):
    def write(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class _PlainWriter:
    """Writer printing matches to stdout and errors to stderr."""

    def write(self, message: str) -> None:
        print(message)

    def error(self, message: str) -> None:
        print(message, file=sys.stderr)


class _TqdmWriter:
    """Writer adapter for tqdm progress bars."""

    def __init__(self, pbar: tqdm | SimpleProgress) -> None:
        self.pbar = pbar

    def write(self, message: str) -> None:
        self.pbar.write(message, file=sys.stdout)

    def error(self, message: str) -> None:
        self.pbar.write(message, file=sys.stderr)


def _report_error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def _prune_loops(
    dirpath: str,
    dirnames: list[str],
    ancestors: dict[str, frozenset[tuple[int, int]]],
    on_error: ErrorHandler,
) -> list[str]:
    """Drop child directories that are one of their own ancestors."""
    lineage = ancestors.pop(dirpath, frozenset())
    kept = []
    for name in sorted(dirnames):
        child = os.path.join(dirpath, name)
        path = Path(child)
        try:
            st = path.stat()
        except OSError as exc:
            on_error(str(exc))
            continue
        key = (st.st_dev, st.st_ino)
        if key in lineage:
            on_error(f"File system loop found: {path} points to one of its ancestors")
            continue
        ancestors[child] = lineage | {key}
        kept.append(name)
    return kept


def scan_directory(
    root: BytesOrStrPath,
    follow_symlinks: bool = False,
    on_error: ErrorHandler | None = None,
) -> Iterator[tuple[Path, int]]:
    """Yield every regular file below ``root`` together with its size.

    Without ``follow_symlinks`` symbolic links are neither reported nor
    descended into. With it, link targets are used and a directory that leads
    back to one of its own ancestors is skipped to break the loop. Errors are
    passed to ``on_error`` and the walk continues.

    Args:
        root: Directory to search (a regular file is yielded as is)
        follow_symlinks: Whether to traverse symbolic links
        on_error: Callback receiving a message for every skipped entry

    Yields:
        Tuples of (file path, file size)

    """
    report = on_error or _report_error
    root_path = _coerce_path(root)

    try:
        root_stat = root_path.stat()
    except OSError as exc:
        report(str(exc))
        return
    if stat.S_ISREG(root_stat.st_mode):
        yield root_path, root_stat.st_size
        return

    ancestors = {os.fspath(root_path): frozenset({(root_stat.st_dev, root_stat.st_ino)})}

    def _walk_error(exc: OSError) -> None:
        report(str(exc))

    for dirpath, dirnames, filenames in os.walk(root_path, onerror=_walk_error, followlinks=follow_symlinks):
        current = Path(dirpath)
        if follow_symlinks:
            dirnames[:] = _prune_loops(dirpath, dirnames, ancestors, report)
        else:
            dirnames.sort()

        for name in sorted(filenames):
            path = current / name
            try:
                st = path.stat() if follow_symlinks else path.lstat()
            except OSError as exc:
                report(str(exc))
                continue
            if stat.S_ISREG(st.st_mode):
                yield path, st.st_size


def _update_progress_postfix(pbar: _ProgressBar, path: Path) -> None:
    """Update the progress bar postfix with the current file name."""
    display_name = path.name
    if len(display_name) > MAX_DISPLAY_FILENAME_LENGTH:
        display_name = f"{display_name[:MAX_DISPLAY_FILENAME_LENGTH]}..."
    pbar.set_postfix(file=display_name)


def _find_verified_descriptor(
    path: Path,
    candidates: Sequence[Descriptor],
    threshold: float,
    writer: _Writer,
) -> Descriptor | None:
    """Return the first same-size descriptor whose hashes the file matches."""
    try:
        with path.open("rb") as f:
            for descriptor in candidates:
                try:
                    if descriptor.verify_file(f, threshold):
                        return descriptor
                except OSError as exc:
                    writer.error(f"Error: {exc}")
    except OSError as exc:
        writer.error(f"Error: {exc}")
    return None


def search_dir(
    root: BytesOrStrPath,
    context: SearchContext,
    writer: _Writer | None = None,
    progress: _ProgressBar | None = None,
) -> Iterator[Match]:
    """Search a directory for files matching the descriptors of ``context``.

    Files are looked up by size first; only files whose size appears in the
    index are opened and partially re-hashed. Each file yields at most one
    match, for the first descriptor (in torrent order) it verifies against.

    Args:
        root: Directory to search
        context: Descriptor index and search configuration
        writer: Destination for error messages (defaults to stderr)
        progress: Optional progress bar advanced once per scanned file

    Yields:
        Match: Confirmed source/destination pairs, lazily

    """
    sink: _Writer = writer if writer is not None else _PlainWriter()

    def _on_error(message: str) -> None:
        sink.error(f"Error: {message}")

    for path, size in scan_directory(root, context.follow_symlinks, on_error=_on_error):
        if progress is not None:
            progress.update(1)
            _update_progress_postfix(progress, path)

        # Sizes absent from the index cannot match and are never opened
        candidates = context.index.get(size)
        if not candidates:
            continue

        descriptor = _find_verified_descriptor(path, candidates, context.hash_threshold, sink)
        if descriptor is not None:
            yield Match(is_path=path, want_path=descriptor.path, size=size)


def link_matches(
    context: SearchContext,
    input_dirs: Iterable[BytesOrStrPath],
    writer: _Writer,
    *,
    progress: _ProgressBar | None = None,
    dry_run: bool = False,
) -> LinkSummary:
    """Search every input directory in turn and link each match into place.

    Every match is reported as ``<destination> <= <source>`` before linking.
    Link failures are reported and counted without stopping the run.
    """
    summary = LinkSummary()
    for input_dir in input_dirs:
        for match in search_dir(input_dir, context, writer, progress):
            writer.write(f"{match.want_path} <= {match.is_path}")
            summary.matches.append(match)
            if dry_run:
                continue
            try:
                match.link(context.create_symlinks)
            except OSError as exc:
                writer.error(f"Error: {exc}")
                summary.failed += 1
    return summary


def _report_summary(summary: LinkSummary, writer: _Writer, dry_run: bool) -> None:
    if not summary.matches:
        writer.write("\nNo matching files found.")
        return

    count = len(summary.matches)
    size = human_readable_size(summary.matched_bytes)
    if dry_run:
        writer.write(f"\n[DRY RUN] Would link {count} matching file{'s' if count != 1 else ''} ({size}).")
        return

    writer.write(f"\nLinked {summary.linked} of {count} matching file{'s' if count != 1 else ''} ({size}).")
    if summary.failed:
        writer.error(f"Failed to create {summary.failed} link{'s' if summary.failed != 1 else ''}.")


def find_torrent_data(
    torrent_path: StrPath,
    input_dirs: Iterable[BytesOrStrPath],
    output_dir: BytesOrStrPath = "./",
    options: SearchOptions | None = None,
) -> bool:
    """Locate a torrent's files in the input directories and link them into place.

    Args:
        torrent_path: Path to the .torrent file
        input_dirs: Directories to search for existing data
        output_dir: Directory in which the torrent layout is rebuilt
        options: Search options (if None, uses defaults)

    Returns:
        bool: False if the torrent could not be read, True otherwise. Per-file
        errors are reported but do not change the result.

    """
    if options is None:
        options = SearchOptions()
    try:
        torrent = load_torrent(torrent_path)
    except TorrentError as e:
        print(f"Error: Failed to read torrent: {e}", file=sys.stderr)
        return False

    descriptors = build_descriptors(torrent, output_dir)
    context = SearchContext(
        index=DescriptorIndex.from_descriptors(descriptors),
        follow_symlinks=options.follow_symlinks,
        create_symlinks=options.create_symlinks,
        hash_threshold=options.hash_threshold,
    )

    # Create progress bar or simple text output
    if options.no_progress:
        pbar: tqdm | SimpleProgress = SimpleProgress()
    else:
        pbar = tqdm(unit="file", desc=f"Searching {torrent.name[:30]}")

    with pbar:
        writer = _TqdmWriter(pbar)
        summary = link_matches(context, input_dirs, writer, progress=pbar, dry_run=options.dry_run)
        pbar.set_postfix(file="")

    _report_summary(summary, _PlainWriter(), options.dry_run)
    return True
