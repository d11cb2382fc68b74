"""
Shared pytest fixtures for LayerLens tests.

Fixtures provided:
- make_layer: Builds gzip-compressed layer archives in memory
- registry_tree: Temporary registry storage tree (registry:2 layout) with helpers
  to add blobs, images, manifest lists and tags
- cache_factory: CacheFactory over a fresh in-process memory backend
"""

import gzip
import io
import json
import os
import tarfile

import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cache.cache import CacheFactory
from cache.memory_backend import MemoryCacheBackend
from registry.layout import RegistryLayout, compute_digest

DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"


def build_layer(files, compress=True) -> bytes:
    """
    Build a layer archive.

    Args:
        files: Mapping of path to content; a path ending in "/" is a directory
        compress: gzip the tar stream
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as archive:
        for path, content in files.items():
            info = tarfile.TarInfo(path.rstrip("/"))
            if path.endswith("/"):
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                archive.addfile(info)
            else:
                data = content or b""
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
    data = buf.getvalue()
    return gzip.compress(data) if compress else data


class RegistryTree:
    """Writes registry storage the way registry:2 lays it out"""

    def __init__(self, root: str):
        self.root = root
        self.layout = RegistryLayout(root)
        os.makedirs(self.layout.repositories_root, exist_ok=True)

    def add_blob(self, data: bytes) -> str:
        digest = compute_digest(data)
        path = self.layout.blob_path(digest)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(data)
        return digest

    def tag(self, repository: str, tag: str, digest: str):
        link = self.layout.tag_link_path(repository, tag)
        os.makedirs(os.path.dirname(link), exist_ok=True)
        with open(link, "w") as fh:
            fh.write(digest)

    def add_image(self, repository, tag, layers, history=None, architecture="amd64", os_name="linux"):
        """
        Store a thin manifest, its config and its layers.

        Args:
            layers: Layer archives (bytes), base layer first
            history: Config history entries; one per layer by default

        Returns:
            (manifest digest, list of layer digests)
        """
        layer_digests = [self.add_blob(data) for data in layers]
        if history is None:
            history = [
                {"created": f"2024-01-0{i + 1}T10:00:00.123456789Z", "created_by": f"RUN step {i + 1}"}
                for i in range(len(layers))
            ]
        config = json.dumps({
            "architecture": architecture,
            "os": os_name,
            "history": history,
        }).encode()
        config_digest = self.add_blob(config)

        manifest = json.dumps({
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST_V2,
            "config": {"mediaType": DOCKER_CONFIG, "digest": config_digest, "size": len(config)},
            "layers": [
                {"mediaType": DOCKER_LAYER, "digest": d, "size": len(data)}
                for d, data in zip(layer_digests, layers)
            ],
        }).encode()
        manifest_digest = self.add_blob(manifest)
        if tag:
            self.tag(repository, tag, manifest_digest)
        return manifest_digest, layer_digests

    def add_manifest_list(self, repository, tag, manifest_digests, media_type=DOCKER_MANIFEST_LIST):
        manifest = json.dumps({
            "schemaVersion": 2,
            "mediaType": media_type,
            "manifests": [
                {"mediaType": DOCKER_MANIFEST_V2, "digest": d, "size": 0}
                for d in manifest_digests
            ],
        }).encode()
        digest = self.add_blob(manifest)
        self.tag(repository, tag, digest)
        return digest


@pytest.fixture
def make_layer():
    """Factory for in-memory layer archives"""
    return build_layer


@pytest.fixture
def registry_tree(tmp_path):
    """Empty registry storage tree under a temporary directory"""
    return RegistryTree(str(tmp_path / "registry"))


@pytest.fixture
def cache_backend():
    return MemoryCacheBackend()


@pytest.fixture
def cache_factory(cache_backend):
    """Cache factory over a fresh memory backend"""
    return CacheFactory(cache_backend, default_ttl=60)
