"""Pydantic models for OCI/Docker manifest documents.

Models accept both OCI and Docker schema 2 documents. Unknown fields are
kept so a manifest can be re-serialized without losing data.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from undock.platforms import Platform


class PlatformSpec(BaseModel):
    """Platform descriptor attached to an index entry."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    architecture: str = ""
    os: str = ""
    os_version: str | None = Field(default=None, alias="os.version")
    os_features: list[str] | None = Field(default=None, alias="os.features")
    variant: str = ""

    def to_platform(self) -> Platform:
        return Platform(self.os, self.architecture, self.variant)


class Descriptor(BaseModel):
    """Content descriptor (digest, media type, size).

    Attributes:
        media_type: Media type of the referenced content.
        digest: Content digest ('sha256:...').
        size: Size of the referenced content in bytes.
        urls: Optional alternate download locations.
        annotations: Optional annotations.
        platform: Platform of the referenced manifest (index entries only).
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    media_type: str = Field(default="", alias="mediaType")
    digest: str
    size: int = Field(default=0, ge=0)
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    platform: PlatformSpec | None = None


class ImageManifest(BaseModel):
    """Single-platform image manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str | None = Field(default=None, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None


class ImageIndex(BaseModel):
    """Multi-platform manifest index (or Docker manifest list)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str | None = Field(default=None, alias="mediaType")
    manifests: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None


def dump_document(model: BaseModel) -> bytes:
    """Serialize a manifest model to compact JSON bytes."""
    data: dict[str, Any] = model.model_dump(by_alias=True, exclude_none=True)
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


__all__ = [
    "Descriptor",
    "ImageIndex",
    "ImageManifest",
    "PlatformSpec",
    "dump_document",
]
