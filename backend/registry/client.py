"""
Registry Client

Uniform, asynchronous view of a registry, implemented by three variants:

- LocalRegistryClient: reads registry storage directly from disk
- RemoteRegistryClient: speaks the registry HTTP API v2
- CachedRegistryClient: decorator memoizing the expensive reads of either

Local and Remote share the manifest resolution and layer indexing logic in
RegistryClientBase. Chained lookups (sub-manifests of a manifest list, image
configs, layer archives for indexing) go through `self.recurse`, which is the
client itself or the CachedRegistryClient wrapping it. That self-reference is
the only cycle in the client object graph.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import BinaryIO, List, Optional

from content.aufs_filter import AufsFilter
from content.layer_extractor import LayerExtractor, normalize_path
from registry.errors import LayerArchiveError, ManifestFormatError, NotFoundError
from registry.layout import is_digest
from registry.models import (
    MANIFEST_LIST_TYPES,
    MANIFEST_V2_TYPES,
    FatManifest,
    History,
    Image,
    ImageConfig,
    ImageSet,
    Layer,
    LayerIndex,
    LayerPath,
    LayerProxyInfo,
    Permissions,
    Platform,
    Repository,
    ThinManifest,
)
from utils.async_io import run_blocking

logger = logging.getLogger(__name__)


class RegistryClient(ABC):
    """Capability set shared by every registry client variant"""

    @abstractmethod
    async def resolve_image_set(self, repository: str, reference: str) -> ImageSet:
        """Resolve a tag or digest into a normalized ImageSet"""

    @abstractmethod
    async def get_tag_digest(self, repository: str, tag: str) -> str:
        ...

    @abstractmethod
    async def get_manifest(self, repository: str, digest: str) -> dict:
        ...

    @abstractmethod
    async def get_image_config(self, repository: str, digest: str) -> ImageConfig:
        ...

    @abstractmethod
    async def get_blob(self, repository: str, digest: str) -> BinaryIO:
        ...

    @abstractmethod
    async def get_layer_archive(self, repository: str, digest: str) -> BinaryIO:
        ...

    @abstractmethod
    async def get_layer(self, repository: str, digest: str) -> Layer:
        ...

    @abstractmethod
    async def get_file(self, repository: str, layer: Layer, path: str) -> BinaryIO:
        ...

    @abstractmethod
    async def list_repositories(self) -> List[Repository]:
        ...

    @abstractmethod
    async def list_tags(self, repository: str) -> List[str]:
        ...

    @abstractmethod
    async def get_permissions(self, repository: str) -> Permissions:
        ...

    @abstractmethod
    async def delete_image(self, repository: str, digest: str) -> None:
        ...

    @abstractmethod
    async def delete_repository(self, repository: str) -> None:
        ...

    @abstractmethod
    async def get_layer_proxy_info(self, repository: str, layer: Layer) -> LayerProxyInfo:
        """URL and Authorization header a third party can use to fetch the layer blob"""

    @abstractmethod
    async def get_indexes(self, repository: str, image: Image) -> List[LayerIndex]:
        """Whiteout-filtered file listings of every layer, topmost first"""

    async def find_path(self, repository: str, image: Image, path: str) -> Optional[LayerPath]:
        """
        Locate the layer that owns `path` in the merged filesystem view.

        Args:
            repository: Repository the image belongs to
            image: Image to search
            path: File or directory path ("" or "/" is the image root)

        Returns:
            LayerPath for the topmost layer containing the path, or None
        """
        target = normalize_path(path)
        layers = {layer.digest: layer for layer in image.layers}
        indexes = await self.get_indexes(repository, image)

        if not target:
            if not indexes:
                return None
            return LayerPath(layer=layers[indexes[0].digest], is_directory=True)

        prefix = target + "/"
        for index in indexes:
            if target in index.files:
                return LayerPath(layer=layers[index.digest], is_directory=False)
            if any(f.startswith(prefix) for f in index.files):
                return LayerPath(layer=layers[index.digest], is_directory=True)

        return None

    async def get_image_files(self, repository: str, image: Image) -> List[str]:
        """Sorted file listing of the merged image filesystem"""
        files = set()
        for index in await self.get_indexes(repository, image):
            files.update(index.files)
        return sorted(files)


class RegistryClientBase(RegistryClient):
    """
    Manifest resolution and layer indexing shared by Local and Remote.

    Args:
        extractor: Layer archive reader
        aufs_filter: Whiteout filter applied to raw layer listings
        recurse: Client used for chained lookups; defaults to this instance
    """

    def __init__(
        self,
        extractor: Optional[LayerExtractor] = None,
        aufs_filter: Optional[AufsFilter] = None,
        recurse: Optional[RegistryClient] = None,
    ):
        self.extractor = extractor or LayerExtractor()
        self.aufs_filter = aufs_filter or AufsFilter()
        self._recurse = recurse

    @property
    def recurse(self) -> RegistryClient:
        return self._recurse if self._recurse is not None else self

    async def resolve_image_set(self, repository: str, reference: str) -> ImageSet:
        if is_digest(reference):
            digest = reference
        else:
            digest = await self.recurse.get_tag_digest(repository, reference)

        manifest = await self.get_manifest(repository, digest)
        media_type = manifest.get("mediaType") or ""

        # A thin manifest becomes a set with one image, so callers only ever see sets
        if media_type.startswith(MANIFEST_LIST_TYPES):
            fat_manifest = FatManifest.model_validate(manifest)
            images = []
            for sub_manifest in fat_manifest.manifests:
                sub_set = await self.recurse.resolve_image_set(repository, sub_manifest.digest)
                images.append(sub_set.images[0])

            return ImageSet(
                set_digest=digest,
                date=_latest(images),
                images=images,
                platforms=[image.platform for image in images],
            )

        if media_type.startswith(MANIFEST_V2_TYPES):
            thin_manifest = ThinManifest.model_validate(manifest)
            try:
                config = await self.recurse.get_image_config(repository, thin_manifest.config.digest)
            except NotFoundError as e:
                raise NotFoundError("The requested manifest does not exist in the registry.") from e

            image = build_image(digest, thin_manifest, config)
            return ImageSet(
                set_digest=image.digest,
                date=_latest([image]),
                images=[image],
                platforms=[image.platform],
            )

        raise ManifestFormatError(f"Cannot build image set from mediatype '{media_type}'")

    async def get_image_config(self, repository: str, digest: str) -> ImageConfig:
        stream = await self.get_blob(repository, digest)
        try:
            data = await run_blocking(stream.read)
        finally:
            stream.close()
        return ImageConfig.model_validate_json(data)

    async def get_indexes(self, repository: str, image: Image) -> List[LayerIndex]:
        return self.aufs_filter.filter_layers(await self._get_raw_indexes(repository, image))

    async def _get_raw_indexes(self, repository: str, image: Image, max_depth: int = 0) -> List[LayerIndex]:
        """
        Extract raw file listings of each layer, working from the top down.

        A corrupt archive stops the descent; the layers already listed are
        returned as they are still valid.

        Args:
            repository: Repository the image belongs to
            image: Image whose layers are listed
            max_depth: Maximum number of layers to list; 0 lists all
        """
        indexes = []
        for depth, layer in enumerate(reversed(image.layers), start=1):
            try:
                stream = await self.recurse.get_layer_archive(repository, layer.digest)
                try:
                    files = await run_blocking(self.extractor.list_files, stream)
                finally:
                    stream.close()
            except LayerArchiveError as e:
                logger.error(f"Encountered corrupt layer archive {layer.digest}, halting index: {e}")
                break

            indexes.append(LayerIndex(depth=depth, digest=layer.digest, files=files))

            if max_depth > 0 and depth >= max_depth:
                break

        return indexes


def build_image(digest: str, manifest: ThinManifest, config: ImageConfig) -> Image:
    """
    Zip a thin manifest's layers with its config history.

    Config history also records steps that produced no layer (ENV, LABEL, ...);
    those are skipped so the remaining entries line up one-to-one with the
    layers. Missing entries are filled with empty History records.
    """
    layers = [Layer.from_descriptor(d) for d in manifest.layers]
    layer_history = [History.from_config(h) for h in config.history if not h.empty_layer]

    if len(layer_history) != len(layers):
        logger.debug(
            f"Image {digest} has {len(layers)} layers but {len(layer_history)} history entries"
        )
    history = layer_history[:len(layers)]
    history.extend(History() for _ in range(len(layers) - len(history)))

    return Image(
        digest=digest,
        layers=layers,
        history=history,
        platform=Platform(
            architecture=config.architecture,
            os=config.os,
            os_version=config.os_version,
        ),
    )


def _latest(images: List[Image]):
    dates = [h.created for image in images for h in image.history if h.created is not None]
    return max(dates) if dates else None


def parse_manifest(data: bytes) -> dict:
    """Decode a manifest body, treating invalid JSON as a format error"""
    try:
        manifest = json.loads(data)
    except ValueError as e:
        raise ManifestFormatError(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(manifest, dict):
        raise ManifestFormatError("Manifest is not a JSON object")
    return manifest
