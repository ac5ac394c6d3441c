"""
mesh_extractor.py — Locate textured-mesh files in a result archive.

No transcoding happens here: OBJ/MTL/texture/GLB/PLY bytes are passed through
verbatim and only the content type is inferred from the matched extension.
"""

import logging
from dataclasses import dataclass

from odm_archive import MESH, MTL, TEXTURE, ArchiveDirectory, ArtifactDescriptor, resolve

logger = logging.getLogger("mesh_extractor")

MESH_DESCRIPTORS: dict[str, ArtifactDescriptor] = {
    "mesh": MESH,
    "texture": TEXTURE,
    "mtl": MTL,
}

# Extensions a cached copy of each subtype may carry, checked in order
CACHE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "mesh": ("obj", "ply", "glb"),
    "texture": ("png", "jpg"),
    "mtl": ("mtl",),
}


@dataclass
class MeshArtifact:
    data: bytes
    filename: str
    format: str
    content_type: str


def extract(directory: ArchiveDirectory, subtype: str, job_id: str) -> MeshArtifact:
    """Return the first matching *subtype* file from *directory*."""
    descriptor = MESH_DESCRIPTORS.get(subtype)
    if descriptor is None:
        raise ValueError(f"Unknown mesh file type '{subtype}' (expected one of: "
                         f"{', '.join(MESH_DESCRIPTORS)})")

    entry = resolve(directory, descriptor)
    fmt = entry.format
    data = entry.read()
    logger.info("Extracted %s (%d bytes)", entry.path, len(data))
    return MeshArtifact(
        data=data,
        filename=f"{subtype}_{job_id}.{fmt.ext}",
        format=fmt.ext,
        content_type=fmt.content_type,
    )
