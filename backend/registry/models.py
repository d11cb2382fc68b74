"""
Registry Models for LayerLens
Pydantic models for manifests, image configs and the normalized image model
"""

import re
from datetime import datetime
from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


# Manifest media types understood by the resolver
MANIFEST_LIST_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2",
    "application/vnd.oci.image.index.v1",
)
MANIFEST_V2_TYPES = (
    "application/vnd.docker.distribution.manifest.v2",
    "application/vnd.oci.image.manifest.v1",
)
MANIFEST_ACCEPT = ",".join([
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
])


class Permissions(IntEnum):
    """Effective permission level of the caller on a repository"""
    NONE = 0
    PULL = 1
    PUSH = 2
    ADMIN = 3


# ==================== Wire formats ====================

class Descriptor(BaseModel):
    """Content descriptor inside a manifest"""
    model_config = ConfigDict(populate_by_name=True)

    media_type: Optional[str] = Field(None, alias="mediaType")
    digest: str
    size: int = 0
    platform: Optional[dict] = None


class FatManifest(BaseModel):
    """Manifest list / image index referencing per-platform manifests"""
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(2, alias="schemaVersion")
    media_type: Optional[str] = Field(None, alias="mediaType")
    manifests: list[Descriptor] = Field(default_factory=list)


class ThinManifest(BaseModel):
    """Single-platform image manifest"""
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(2, alias="schemaVersion")
    media_type: Optional[str] = Field(None, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)


def _trim_fraction(value):
    # Go writes nanosecond timestamps; datetime only holds microseconds
    if isinstance(value, str):
        return _FRACTION_RE.sub(r"\1", value)
    return value


class ConfigHistory(BaseModel):
    """One history entry of an image config"""
    created: Optional[datetime] = None
    created_by: Optional[str] = None
    comment: Optional[str] = None
    empty_layer: bool = False

    @field_validator("created", mode="before")
    @classmethod
    def trim_created(cls, value):
        return _trim_fraction(value)


class ImageConfig(BaseModel):
    """Image config blob (only the fields LayerLens uses)"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    architecture: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = Field(None, alias="os.version")
    created: Optional[datetime] = None
    history: list[ConfigHistory] = Field(default_factory=list)

    @field_validator("created", mode="before")
    @classmethod
    def trim_created(cls, value):
        return _trim_fraction(value)


# ==================== Normalized model ====================

class Platform(BaseModel):
    architecture: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = None


class History(BaseModel):
    """Build step that produced a layer"""
    created: Optional[datetime] = None
    command: Optional[str] = None

    @classmethod
    def from_config(cls, entry: ConfigHistory) -> "History":
        return cls(created=entry.created, command=entry.created_by)


class Layer(BaseModel):
    """One filesystem delta of an image"""
    digest: str
    size: int = 0
    media_type: Optional[str] = None

    @classmethod
    def from_descriptor(cls, descriptor: Descriptor) -> "Layer":
        return cls(digest=descriptor.digest, size=descriptor.size, media_type=descriptor.media_type)


class Image(BaseModel):
    """
    Normalized single-platform image.

    Layers are ordered bottom-to-top (index 0 is the base layer) and history
    holds exactly one entry per layer, in the same order.
    """
    digest: str
    layers: list[Layer] = Field(default_factory=list)
    history: list[History] = Field(default_factory=list)
    platform: Platform = Field(default_factory=Platform)


class ImageSet(BaseModel):
    """Images published under one tag (one per platform)"""
    set_digest: str
    date: Optional[datetime] = None
    images: list[Image] = Field(default_factory=list)
    platforms: list[Platform] = Field(default_factory=list)


class Repository(BaseModel):
    name: str
    tags: int = 0
    permissions: Permissions = Permissions.NONE


class LayerIndex(BaseModel):
    """Files contained in one layer; depth 1 is the topmost layer"""
    depth: int
    digest: str
    files: list[str] = Field(default_factory=list)


class LayerPath(BaseModel):
    """Layer that currently owns a path in the merged view"""
    layer: Layer
    is_directory: bool = False


class LayerProxyInfo(BaseModel):
    """Fetchable URL and Authorization header value for a layer blob"""
    layer_url: str
    layer_authorization: Optional[str] = None
