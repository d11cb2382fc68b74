"""
On-disk registry storage layout.

Mirrors the layout written by the reference `registry:2` filesystem driver:

    <root>/docker/registry/v2/repositories/<repo>/_manifests/tags/<tag>/current/link
    <root>/docker/registry/v2/blobs/<algorithm>/<hex[:2]>/<hex>/data

The same layout is used for the remote client's layer cache.
"""

import hashlib
import os
import re

REPOSITORIES_DIR = os.path.join("docker", "registry", "v2", "repositories")
BLOBS_DIR = os.path.join("docker", "registry", "v2", "blobs")
TAGS_FOLDER = os.path.join("_manifests", "tags")

_DIGEST_RE = re.compile(r'^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$')
_REPOSITORY_RE = re.compile(r'^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$')
_TAG_RE = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')


def is_digest(reference: str) -> bool:
    """Return True if reference looks like `<algorithm>:<hex>` rather than a tag"""
    return bool(reference) and bool(_DIGEST_RE.match(reference))


def validate_repository_name(repository: str) -> None:
    """
    Validate a repository name before it is joined to a filesystem path.

    Raises:
        ValueError: If the name is not a valid distribution repository name
    """
    if not repository or not _REPOSITORY_RE.match(repository):
        raise ValueError(f"Invalid repository name: {repository!r}")


def validate_reference(reference: str) -> None:
    """Validate a tag or digest reference"""
    if not (is_digest(reference) or _TAG_RE.match(reference or "")):
        raise ValueError(f"Invalid tag or digest: {reference!r}")


def digest_path(digest: str) -> str:
    """
    Convert a digest into its sharded blob directory.

    Example:
        >>> digest_path("sha256:abcdef...")
        'sha256/ab/abcdef...'
    """
    if not is_digest(digest):
        raise ValueError(f"Invalid digest: {digest!r}")
    algorithm, hex_part = digest.split(":", 1)
    return os.path.join(algorithm, hex_part[:2], hex_part)


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Compute a digest string for raw bytes"""
    h = hashlib.new(algorithm)
    h.update(data)
    return f"{algorithm}:{h.hexdigest()}"


class RegistryLayout:
    """Path arithmetic for one registry storage root"""

    def __init__(self, root: str):
        self.root = root

    @property
    def repositories_root(self) -> str:
        return os.path.join(self.root, REPOSITORIES_DIR)

    @property
    def blobs_root(self) -> str:
        return os.path.join(self.root, BLOBS_DIR)

    def blob_path(self, digest: str) -> str:
        return os.path.join(self.blobs_root, digest_path(digest), "data")

    def repo_path(self, repository: str) -> str:
        validate_repository_name(repository)
        return os.path.join(self.repositories_root, *repository.split("/"))

    def tags_path(self, repository: str) -> str:
        return os.path.join(self.repo_path(repository), TAGS_FOLDER)

    def tag_path(self, repository: str, tag: str) -> str:
        validate_reference(tag)
        return os.path.join(self.tags_path(repository), tag)

    def tag_link_path(self, repository: str, tag: str) -> str:
        return os.path.join(self.tag_path(repository, tag), "current", "link")
