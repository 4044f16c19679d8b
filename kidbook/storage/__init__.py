"""
Artifact storage for KidBook images and documents.
"""

from .artifacts import (
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
    character_ref_path,
    content_type_for,
    cover_image_path,
    document_path,
    download,
    extension_for,
    page_image_path,
)

__all__ = [
    "ArtifactStore",
    "InMemoryArtifactStore",
    "LocalArtifactStore",
    "character_ref_path",
    "content_type_for",
    "cover_image_path",
    "document_path",
    "download",
    "extension_for",
    "page_image_path",
]
