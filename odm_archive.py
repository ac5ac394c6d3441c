"""
odm_archive.py — Fetch a NodeODM ``all.zip`` and locate artifacts inside it.

The whole archive is downloaded once per call, then indexed in memory with
``zipfile``; individual members are only inflated when ``ArchiveEntry.read()``
is called.  Artifacts are located by trying an ordered list of known
archive-relative paths (exact matches only).
"""

import enum
import io
import logging
import zipfile
from dataclasses import dataclass, field

import requests

from nodeodm_client import NodeODMClient
from odm_errors import ArchiveUnavailableError, ArtifactNotFoundError, UnsupportedFormatError

logger = logging.getLogger("odm_archive")

ARCHIVE_NAME = "all.zip"

# ---------------------------------------------------------------------------
#  Artifact formats
# ---------------------------------------------------------------------------


class ArtifactFormat(enum.Enum):
    """File formats found in a NodeODM result archive."""

    OBJ = ("obj", "text/plain")
    MTL = ("mtl", "text/plain")
    PLY = ("ply", "application/ply")
    GLB = ("glb", "model/gltf-binary")
    PNG = ("png", "image/png")
    JPG = ("jpg", "image/jpeg")
    LAS = ("las", "application/vnd.las")
    LAZ = ("laz", "application/vnd.laszip")
    TIF = ("tif", "image/tiff")

    def __init__(self, ext: str, content_type: str):
        self.ext = ext
        self.content_type = content_type

    @classmethod
    def from_ext(cls, ext: str) -> "ArtifactFormat":
        ext = ext.lower().lstrip(".")
        fmt = _EXTENSIONS.get(ext)
        if fmt is None:
            raise UnsupportedFormatError(f"Unsupported file extension: .{ext}")
        return fmt

    @classmethod
    def from_path(cls, path: str) -> "ArtifactFormat":
        name = path.rsplit("/", 1)[-1]
        if "." not in name:
            raise UnsupportedFormatError(f"Cannot infer format of '{path}' (no extension)")
        # ".copc.laz" resolves through its last suffix
        return cls.from_ext(name.rsplit(".", 1)[-1])


_EXTENSIONS: dict[str, ArtifactFormat] = {fmt.ext: fmt for fmt in ArtifactFormat}
_EXTENSIONS["tiff"] = ArtifactFormat.TIF
_EXTENSIONS["jpeg"] = ArtifactFormat.JPG

# ---------------------------------------------------------------------------
#  Artifact descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Where to look for one kind of artifact, in order of preference."""

    artifact_type: str
    label: str
    candidate_paths: tuple[str, ...]
    keywords: tuple[str, ...] = field(default_factory=tuple)


ORTHOMOSAIC = ArtifactDescriptor(
    artifact_type="orthomosaic",
    label="Orthophoto",
    candidate_paths=(
        "odm_orthophoto/odm_orthophoto.png",
        "odm_orthophoto/odm_orthophoto.tif",
        "odm_orthophoto/odm_orthophoto.jpg",
    ),
    keywords=("ortho",),
)

POINTCLOUD = ArtifactDescriptor(
    artifact_type="pointcloud",
    label="Georeferenced point cloud",
    candidate_paths=(
        "odm_georeferencing/odm_georeferenced_model.laz",
        "odm_georeferencing/odm_georeferenced_model.las",
        "odm_georeferencing/odm_georeferenced_model.copc.laz",
        "georeferenced_model.laz",
        "georeferenced_model.las",
    ),
    keywords=("georef", ".laz", ".las", ".ply"),
)

MESH = ArtifactDescriptor(
    artifact_type="mesh",
    label="Mesh",
    candidate_paths=(
        "odm_texturing/odm_textured_model_geo.obj",
        "odm_texturing/odm_textured_model.obj",
        "odm_texturing/odm_textured_model_geo.glb",
        "odm_texturing/odm_textured_model.glb",
        "odm_meshing/odm_mesh.ply",
        "textured_model.obj",
        "mesh.ply",
    ),
    keywords=("mesh", "textur", ".obj", ".ply", ".glb", ".mtl"),
)

TEXTURE = ArtifactDescriptor(
    artifact_type="texture",
    label="Texture",
    candidate_paths=(
        "odm_texturing/odm_textured_model_geo_material0000_map_Kd.png",
        "odm_texturing/odm_textured_model_geo_material0000_map_Kd.jpg",
        "odm_texturing/odm_textured_model_material0000_map_Kd.png",
        "odm_texturing/odm_textured_model_material0000_map_Kd.jpg",
    ),
    keywords=("textur", ".png", ".jpg"),
)

MTL = ArtifactDescriptor(
    artifact_type="mtl",
    label="MTL",
    candidate_paths=(
        "odm_texturing/odm_textured_model_geo.mtl",
        "odm_texturing/odm_textured_model.mtl",
    ),
    keywords=("textur", ".mtl"),
)

# ---------------------------------------------------------------------------
#  Archive directory
# ---------------------------------------------------------------------------


class ArchiveEntry:
    """One member of a downloaded archive; bytes are inflated on demand."""

    def __init__(self, zf: zipfile.ZipFile, info: zipfile.ZipInfo):
        self._zf = zf
        self._info = info

    @property
    def path(self) -> str:
        return self._info.filename

    @property
    def size(self) -> int:
        return self._info.file_size

    @property
    def format(self) -> ArtifactFormat:
        return ArtifactFormat.from_path(self.path)

    def read(self) -> bytes:
        return self._zf.read(self._info)

    def __repr__(self):
        return f"ArchiveEntry({self.path!r}, size={self.size})"


class ArchiveDirectory:
    """Random-access listing over an in-memory zip archive."""

    def __init__(self, data: bytes):
        try:
            self._zf = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as exc:
            raise ArchiveUnavailableError(f"Downloaded {ARCHIVE_NAME} is not a valid ZIP archive: {exc}") from exc
        self.entries = [ArchiveEntry(self._zf, info)
                        for info in self._zf.infolist() if not info.is_dir()]
        self._by_path = {e.path: e for e in self.entries}
        self.nbytes = len(data)

    @property
    def paths(self) -> list[str]:
        return [e.path for e in self.entries]

    def get(self, path: str) -> ArchiveEntry | None:
        return self._by_path.get(path)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self):
        return len(self.entries)


def resolve(directory: ArchiveDirectory, descriptor: ArtifactDescriptor) -> ArchiveEntry:
    """Return the first candidate path of *descriptor* present in *directory*.

    Raises ``ArtifactNotFoundError`` carrying every candidate tried plus the
    archive paths that merely look related (for the error message only).
    """
    for candidate in descriptor.candidate_paths:
        entry = directory.get(candidate)
        if entry is not None:
            logger.info("Found %s: %s", descriptor.artifact_type, candidate)
            return entry

    nearby = [p for p in directory.paths
              if any(k in p for k in descriptor.keywords)]
    logger.warning("Available %s files: %s", descriptor.artifact_type, ", ".join(nearby) or "(none)")
    raise ArtifactNotFoundError(descriptor.label, list(descriptor.candidate_paths), nearby)

# ---------------------------------------------------------------------------
#  Fetcher
# ---------------------------------------------------------------------------


class ArchiveFetcher:
    """Download a task's result bundle from NodeODM.

    Each ``fetch`` performs exactly one full download; there is no retry and
    no timeout beyond the HTTP client default.
    """

    def __init__(self, client: NodeODMClient):
        self.client = client

    def fetch(self, job_id: str) -> ArchiveDirectory:
        if not job_id:
            raise ValueError("job_id must be a non-empty string")

        try:
            response = self.client.download(job_id, ARCHIVE_NAME)
        except requests.RequestException as exc:
            raise ArchiveUnavailableError(f"Failed to download {ARCHIVE_NAME}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise ArchiveUnavailableError(
                f"Failed to download {ARCHIVE_NAME}: {response.status_code} {response.reason}",
                status=response.status_code,
            )

        data = response.content
        logger.info("Downloaded %d bytes, indexing archive", len(data))
        directory = ArchiveDirectory(data)
        logger.info("Archive for %s holds %d file(s)", job_id, len(directory))
        return directory
