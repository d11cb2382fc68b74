"""
Layer Extractor

Reads layer blobs (gzip-compressed or plain tar archives) in streaming mode.
Listing never materializes file content; extraction reads a single entry.
"""

import gzip
import io
import logging
import tarfile
import zlib
from typing import BinaryIO, List

from registry.errors import LayerArchiveError, NotFoundError

logger = logging.getLogger(__name__)

# Exceptions raised by tarfile/gzip/zlib for damaged input
_ARCHIVE_ERRORS = (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile)

READ_CHUNK_SIZE = 1024 * 1024


def _drain(member_stream):
    if member_stream is None:
        return
    while member_stream.read(READ_CHUNK_SIZE):
        pass


def normalize_path(path: str) -> str:
    """
    Normalize an archive or request path to the form used in layer indexes.

    Examples:
        "./etc/passwd" → "etc/passwd"
        "/usr/bin/" → "usr/bin"
        "/" → ""
    """
    path = path.strip()
    while path.startswith("./"):
        path = path[2:]
    return path.strip("/")


class LayerExtractor:
    """Lists and extracts entries of a single layer archive"""

    def list_files(self, stream: BinaryIO) -> List[str]:
        """
        Enumerate the non-directory entries of a layer archive.

        Regular files, symlinks and hardlinks are listed; whiteout markers are
        regular files and are listed as-is.

        Args:
            stream: Readable binary stream of the layer blob

        Returns:
            Normalized entry paths in archive order

        Raises:
            LayerArchiveError: If the archive is corrupt or truncated
        """
        files = []
        try:
            with tarfile.open(fileobj=stream, mode="r|*") as archive:
                for member in archive:
                    if member.isdir():
                        continue
                    if member.isfile():
                        # Stream mode skips member data without noticing a short read
                        _drain(archive.extractfile(member))
                    name = normalize_path(member.name)
                    if name:
                        files.append(name)
        except _ARCHIVE_ERRORS as e:
            raise LayerArchiveError(f"Corrupt layer archive: {e}") from e

        return files

    def extract_file(self, blob_path: str, path: str) -> BinaryIO:
        """
        Extract one file from the layer blob stored at blob_path.

        Args:
            blob_path: Filesystem path of the layer blob
            path: Path of the file inside the layer

        Returns:
            In-memory binary stream positioned at the start of the content

        Raises:
            NotFoundError: If the archive has no regular file at path
            LayerArchiveError: If the archive is corrupt or truncated
        """
        target = normalize_path(path)
        try:
            with open(blob_path, "rb") as fh, tarfile.open(fileobj=fh, mode="r|*") as archive:
                for member in archive:
                    if normalize_path(member.name) != target or not member.isfile():
                        continue
                    # Stream mode only allows reading the current member
                    extracted = archive.extractfile(member)
                    data = extracted.read() if extracted else b""
                    logger.debug(f"Extracted {target} ({len(data)} bytes) from {blob_path}")
                    return io.BytesIO(data)
        except FileNotFoundError as e:
            raise NotFoundError(f"Layer blob not found: {blob_path}") from e
        except _ARCHIVE_ERRORS as e:
            raise LayerArchiveError(f"Corrupt layer archive {blob_path}: {e}") from e

        raise NotFoundError(f"File {target} not found in layer")
