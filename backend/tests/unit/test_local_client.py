"""
Unit tests for the local (storage-backed) registry client.

Tests verify:
- Repository discovery over nested namespaces
- Tag resolution and thin/fat manifest resolution into ImageSets
- Layer indexes, path lookups and file extraction
- Corrupt layers stop indexing without failing it
- Deletes and layer proxy URLs
"""

import json
import os
from unittest.mock import patch

import pytest

from registry.errors import LayerArchiveError, ManifestFormatError, NotFoundError, RegistryError
from registry.local_client import LocalRegistryClient, discover_repositories
from registry.models import Permissions


@pytest.fixture
def client(registry_tree):
    return LocalRegistryClient(registry_tree.root, layer_proxy_url="https://registry.local/v2/")


@pytest.fixture
def alpine(registry_tree, make_layer):
    """library/alpine:3 with two layers; the top layer deletes /etc/motd"""
    base = make_layer({
        "etc/": None,
        "etc/motd": b"welcome",
        "etc/os-release": b"ID=alpine",
        "bin/sh": b"ELF",
    })
    top = make_layer({
        "etc/.wh.motd": b"",
        "app/run.sh": b"#!/bin/sh\necho hi\n",
    })
    digest, layers = registry_tree.add_image("library/alpine", "3", [base, top])
    return digest, layers


@pytest.mark.unit
class TestDiscovery:

    def test_discovers_nested_repositories_and_skips_underscored(self, registry_tree, make_layer):
        """Only real repositories come back, joined with '/'"""
        registry_tree.add_image("team/api", "v1", [make_layer({"a": b"a"})])
        registry_tree.add_image("team/tools/cli", "v1", [make_layer({"b": b"b"})])
        os.makedirs(os.path.join(registry_tree.layout.repositories_root, "_uploads", "x"))

        names = discover_repositories(registry_tree.layout.repositories_root)

        assert names == ["team/api", "team/tools/cli"]

    def test_repository_without_tags_is_skipped(self, registry_tree):
        os.makedirs(registry_tree.layout.tags_path("empty/repo"))

        assert discover_repositories(registry_tree.layout.repositories_root) == []

    @pytest.mark.asyncio
    async def test_list_repositories_counts_tags(self, client, registry_tree, alpine):
        registry_tree.tag("library/alpine", "latest", alpine[0])

        repos = await client.list_repositories()

        assert [(r.name, r.tags, r.permissions) for r in repos] == [("library/alpine", 2, Permissions.ADMIN)]

    @pytest.mark.asyncio
    async def test_list_repositories_on_missing_root(self, tmp_path):
        client = LocalRegistryClient(str(tmp_path / "nothing"))

        assert await client.list_repositories() == []


@pytest.mark.unit
class TestResolution:

    @pytest.mark.asyncio
    async def test_tag_digest(self, client, alpine):
        assert await client.get_tag_digest("library/alpine", "3") == alpine[0]

    @pytest.mark.asyncio
    async def test_missing_tag_raises_not_found(self, client, alpine):
        with pytest.raises(NotFoundError):
            await client.get_tag_digest("library/alpine", "edge")

    @pytest.mark.asyncio
    async def test_thin_manifest_resolves_to_single_image(self, client, alpine):
        digest, layers = alpine

        image_set = await client.resolve_image_set("library/alpine", "3")

        assert image_set.set_digest == digest
        assert len(image_set.images) == 1
        image = image_set.images[0]
        assert [layer.digest for layer in image.layers] == layers
        assert len(image.history) == len(image.layers)
        assert image.history[1].command == "RUN step 2"
        assert image.platform.architecture == "amd64"
        assert image_set.date.day == 2

    @pytest.mark.asyncio
    async def test_resolve_by_digest(self, client, alpine):
        image_set = await client.resolve_image_set("library/alpine", alpine[0])

        assert image_set.set_digest == alpine[0]

    @pytest.mark.asyncio
    async def test_empty_layer_history_is_skipped(self, client, registry_tree, make_layer):
        history = [
            {"created": "2024-02-01T00:00:00Z", "created_by": "ADD rootfs"},
            {"created": "2024-02-02T00:00:00Z", "created_by": "ENV A=1", "empty_layer": True},
            {"created": "2024-02-03T00:00:00Z", "created_by": "RUN make"},
        ]
        registry_tree.add_image("app", "v1", [make_layer({"a": b"a"}), make_layer({"b": b"b"})], history=history)

        image = (await client.resolve_image_set("app", "v1")).images[0]

        assert [h.command for h in image.history] == ["ADD rootfs", "RUN make"]

    @pytest.mark.asyncio
    async def test_fat_manifest_resolves_every_platform(self, client, registry_tree, make_layer):
        amd64, _ = registry_tree.add_image("multi", None, [make_layer({"a": b"1"})], architecture="amd64")
        arm64, _ = registry_tree.add_image("multi", None, [make_layer({"a": b"2"})], architecture="arm64")
        fat = registry_tree.add_manifest_list("multi", "latest", [amd64, arm64])

        image_set = await client.resolve_image_set("multi", "latest")

        assert image_set.set_digest == fat
        assert [i.digest for i in image_set.images] == [amd64, arm64]
        assert [p.architecture for p in image_set.platforms] == ["amd64", "arm64"]

    @pytest.mark.asyncio
    async def test_oci_index_is_a_manifest_list(self, client, registry_tree, make_layer):
        thin, _ = registry_tree.add_image("oci", None, [make_layer({"a": b"1"})])
        registry_tree.add_manifest_list("oci", "1", [thin], media_type="application/vnd.oci.image.index.v1+json")

        image_set = await client.resolve_image_set("oci", "1")

        assert len(image_set.images) == 1

    @pytest.mark.asyncio
    async def test_unknown_media_type_is_format_error(self, client, registry_tree):
        digest = registry_tree.add_blob(json.dumps({
            "schemaVersion": 1,
            "mediaType": "application/vnd.docker.distribution.manifest.v1+prettyjws",
        }).encode())
        registry_tree.tag("old", "v1", digest)

        with pytest.raises(ManifestFormatError):
            await client.resolve_image_set("old", "v1")

    @pytest.mark.asyncio
    async def test_missing_config_is_not_found(self, client, registry_tree, alpine):
        image = (await client.resolve_image_set("library/alpine", "3")).images[0]
        manifest = await client.get_manifest("library/alpine", image.digest)
        os.remove(registry_tree.layout.blob_path(manifest["config"]["digest"]))

        with pytest.raises(NotFoundError, match="does not exist"):
            await client.resolve_image_set("library/alpine", "3")

    @pytest.mark.asyncio
    async def test_invalid_repository_name_is_rejected(self, client):
        with pytest.raises(ValueError):
            await client.get_tag_digest("../../etc", "latest")


@pytest.mark.unit
class TestContent:

    @pytest.mark.asyncio
    async def test_indexes_are_top_down_and_filtered(self, client, alpine):
        image = (await client.resolve_image_set("library/alpine", "3")).images[0]

        indexes = await client.get_indexes("library/alpine", image)

        assert [i.depth for i in indexes] == [1, 2]
        assert indexes[0].digest == image.layers[-1].digest
        assert indexes[0].files == ["app/run.sh"]
        assert "etc/motd" not in indexes[1].files

    @pytest.mark.asyncio
    async def test_image_files_are_merged_view(self, client, alpine):
        image = (await client.resolve_image_set("library/alpine", "3")).images[0]

        files = await client.get_image_files("library/alpine", image)

        assert files == ["app/run.sh", "bin/sh", "etc/os-release"]

    @pytest.mark.asyncio
    async def test_find_path(self, client, alpine):
        image = (await client.resolve_image_set("library/alpine", "3")).images[0]

        file_path = await client.find_path("library/alpine", image, "/etc/os-release")
        dir_path = await client.find_path("library/alpine", image, "etc")
        root = await client.find_path("library/alpine", image, "/")

        assert file_path.layer.digest == image.layers[0].digest
        assert file_path.is_directory is False
        assert dir_path.is_directory is True
        assert root.layer.digest == image.layers[-1].digest
        assert await client.find_path("library/alpine", image, "etc/motd") is None

    @pytest.mark.asyncio
    async def test_get_file(self, client, alpine):
        image = (await client.resolve_image_set("library/alpine", "3")).images[0]

        stream = await client.get_file("library/alpine", image.layers[1], "app/run.sh")

        assert stream.read().startswith(b"#!/bin/sh")

    @pytest.mark.asyncio
    async def test_corrupt_layer_stops_indexing(self, client, registry_tree, make_layer):
        """Layers above the corrupt one are still indexed"""
        good = make_layer({"top.txt": b"ok"})
        digest, layers = registry_tree.add_image("broken", "v1", [make_layer({"base": b"x"}), good])
        with open(registry_tree.layout.blob_path(layers[0]), "wb") as fh:
            fh.write(b"\x1f\x8b" + b"garbage" * 100)
        image = (await client.resolve_image_set("broken", "v1")).images[0]

        indexes = await client.get_indexes("broken", image)

        assert [i.files for i in indexes] == [["top.txt"]]

    @pytest.mark.asyncio
    async def test_failed_archive_fetch_stops_indexing(self, client, registry_tree, make_layer):
        """A layer that fails verification while fetched is treated like a corrupt one"""
        digest, layers = registry_tree.add_image(
            "fetchfail", "v1", [make_layer({"base": b"x"}), make_layer({"top.txt": b"ok"})]
        )
        image = (await client.resolve_image_set("fetchfail", "v1")).images[0]
        fetch = client.get_layer_archive

        async def failing_fetch(repository, layer_digest):
            if layer_digest == layers[0]:
                raise LayerArchiveError(f"Layer {layer_digest} failed verification")
            return await fetch(repository, layer_digest)

        with patch.object(client, "get_layer_archive", side_effect=failing_fetch):
            indexes = await client.get_indexes("fetchfail", image)

        assert [(i.depth, i.files) for i in indexes] == [(1, ["top.txt"])]

    @pytest.mark.asyncio
    async def test_get_layer_size(self, client, alpine):
        layer = await client.get_layer("library/alpine", alpine[1][0])

        assert layer.size > 0


@pytest.mark.unit
class TestDeletesAndProxy:

    @pytest.mark.asyncio
    async def test_delete_image_removes_matching_tags(self, client, registry_tree, alpine, make_layer):
        registry_tree.tag("library/alpine", "latest", alpine[0])
        other, _ = registry_tree.add_image("library/alpine", "edge", [make_layer({"x": b"x"})])

        await client.delete_image("library/alpine", alpine[0])

        assert await client.list_tags("library/alpine") == ["edge"]

    @pytest.mark.asyncio
    async def test_delete_unknown_digest_raises_not_found(self, client, alpine):
        with pytest.raises(NotFoundError):
            await client.delete_image("library/alpine", "sha256:" + "0" * 64)

    @pytest.mark.asyncio
    async def test_delete_repository(self, client, alpine):
        await client.delete_repository("library/alpine")

        assert await client.list_repositories() == []
        with pytest.raises(NotFoundError):
            await client.delete_repository("library/alpine")

    @pytest.mark.asyncio
    async def test_layer_proxy_info(self, client, alpine):
        layer = await client.get_layer("library/alpine", alpine[1][0])

        info = await client.get_layer_proxy_info("library/alpine", layer)

        assert info.layer_url == f"https://registry.local/v2/library/alpine/blobs/{layer.digest}"
        assert info.layer_authorization is None

    @pytest.mark.asyncio
    async def test_layer_proxy_requires_configuration(self, registry_tree, alpine):
        client = LocalRegistryClient(registry_tree.root)
        layer = await client.get_layer("library/alpine", alpine[1][0])

        with pytest.raises(RegistryError):
            await client.get_layer_proxy_info("library/alpine", layer)
