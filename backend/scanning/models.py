"""
Scanning Models for LayerLens
Clair v1 wire formats and the normalized vulnerability summary
"""

from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ScanStatus(str, Enum):
    """Cached scan state; a pending scan has no cache entry at all"""
    COMPLETE = "Complete"
    FAILED = "Failed"


class Severity(IntEnum):
    UNKNOWN = 0
    NEGLIGIBLE = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5
    DEFCON1 = 6

    @classmethod
    def parse(cls, value: Optional[str]) -> "Severity":
        try:
            return cls[(value or "").upper()]
        except KeyError:
            return cls.UNKNOWN


# ==================== Clair v1 wire formats ====================

class ClairVulnerability(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(alias="Name")
    namespace_name: Optional[str] = Field(None, alias="NamespaceName")
    description: Optional[str] = Field(None, alias="Description")
    link: Optional[str] = Field(None, alias="Link")
    severity: Optional[str] = Field(None, alias="Severity")
    fixed_by: Optional[str] = Field(None, alias="FixedBy")


class ClairFeature(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(alias="Name")
    namespace_name: Optional[str] = Field(None, alias="NamespaceName")
    version: Optional[str] = Field(None, alias="Version")
    added_by: Optional[str] = Field(None, alias="AddedBy")
    vulnerabilities: list[ClairVulnerability] = Field(default_factory=list, alias="Vulnerabilities")


class ClairLayer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(alias="Name")
    parent_name: Optional[str] = Field(None, alias="ParentName")
    namespace_name: Optional[str] = Field(None, alias="NamespaceName")
    indexed_by_version: Optional[int] = Field(None, alias="IndexedByVersion")
    features: list[ClairFeature] = Field(default_factory=list, alias="Features")


class ClairLayerEnvelope(BaseModel):
    """Response body of GET /v1/layers/<name>"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    layer: ClairLayer = Field(alias="Layer")


class ClairLayerSubmission(BaseModel):
    """Layer part of a POST /v1/layers body"""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="Name")
    parent_name: Optional[str] = Field(None, alias="ParentName")
    path: str = Field(alias="Path")
    format: str = Field("Docker", alias="Format")
    headers: Optional[dict[str, str]] = Field(None, alias="Headers")


class ClairLayerRequest(BaseModel):
    """Body of POST /v1/layers"""
    model_config = ConfigDict(populate_by_name=True)

    layer: ClairLayerSubmission = Field(alias="Layer")


# ==================== Normalized summary ====================

class Vulnerability(BaseModel):
    name: str
    namespace: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None
    severity: Severity = Severity.UNKNOWN
    fixed_by: Optional[str] = None


class ScanComponent(BaseModel):
    """Installed package carrying at least one vulnerability"""
    name: str
    version: Optional[str] = None
    namespace: Optional[str] = None
    vulnerabilities: list[Vulnerability] = Field(default_factory=list)
    max_severity: Severity = Severity.UNKNOWN


class ScanResult(BaseModel):
    """Vulnerability summary of an image, cached per image digest"""
    status: ScanStatus
    message: Optional[str] = None
    digest: Optional[str] = None
    total_components: int = 0
    vulnerable_components: list[ScanComponent] = Field(default_factory=list)


def to_scan_result(envelope: ClairLayerEnvelope, image_digest: str) -> ScanResult:
    """
    Summarize the Clair analysis of an image's top layer as the image's result.

    Components are ordered by descending maximum severity, then by name.
    """
    components = []
    for feature in envelope.layer.features:
        if not feature.vulnerabilities:
            continue
        vulnerabilities = [
            Vulnerability(
                name=v.name,
                namespace=v.namespace_name,
                description=v.description,
                link=v.link,
                severity=Severity.parse(v.severity),
                fixed_by=v.fixed_by,
            )
            for v in feature.vulnerabilities
        ]
        components.append(ScanComponent(
            name=feature.name,
            version=feature.version,
            namespace=feature.namespace_name,
            vulnerabilities=vulnerabilities,
            max_severity=max(v.severity for v in vulnerabilities),
        ))

    components.sort(key=lambda c: (-c.max_severity, c.name))
    return ScanResult(
        status=ScanStatus.COMPLETE,
        digest=image_digest,
        total_components=len(envelope.layer.features),
        vulnerable_components=components,
    )
