#!/usr/bin/env python3
"""
odm_server.py — HTTP extraction service for NodeODM results.

Fetches a task's ``all.zip`` from a NodeODM node, pulls the orthophoto, point
cloud or textured mesh out of it, converts it into something a browser can
render, and caches the result on local disk for an hour.

Can be started:
  1. Standalone:  python odm_server.py [--host 0.0.0.0] [--port 5000]
  2. Programmatically via ``create_app()`` / ``start_server()``.

Configuration: ``NODEODM_URL`` (default ``http://localhost:3001``), optional
``NODEODM_TOKEN`` and ``ODM_CACHE_DIR``.  Command-line flags override them.
"""

import argparse
import logging
import math
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, abort, jsonify, request

import mesh_extractor
import pointcloud_decoder
import raster_decoder
from disk_cache import CACHE_TTL_SECONDS, CacheStore, DiskCache
from mesh_extractor import CACHE_EXTENSIONS, MESH_DESCRIPTORS
from nodeodm_client import DEFAULT_NODEODM_URL, NodeODMClient
from odm_archive import ORTHOMOSAIC, POINTCLOUD, ArchiveFetcher, ArtifactFormat, resolve
from odm_errors import ArtifactNotFoundError, ExtractionError, UnsupportedFormatError
from pointcloud_decoder import DEFAULT_MAX_POINTS, PointCloudBuffer

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------
DEFAULT_PORT = 5000
DEFAULT_HOST = "0.0.0.0"
CACHE_CONTROL = f"public, max-age={CACHE_TTL_SECONDS}"

ORTHOMOSAIC_CACHE = "odm-orthomosaic-cache"
POINTCLOUD_CACHE = "odm-pointcloud-cache"
MESH_CACHE = "odm-mesh-cache"

# Raw point cloud cache keys, checked in order
_POINTCLOUD_EXTS = ("laz", "las")

logger = logging.getLogger("odm_server")


def format_bytes(size: int) -> str:
    """Human-readable size, e.g. ``1.5 MB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{round(size / 1024 ** i, 2):g} {units[i]}"


def _parse_max_points(value: str | None) -> int:
    if value is None or value == "":
        return DEFAULT_MAX_POINTS
    try:
        max_points = int(value)
    except ValueError:
        abort(400, description=f"'maxPoints' must be an integer, got '{value}'")
    if max_points < 1:
        abort(400, description="'maxPoints' must be at least 1")
    return max_points


def _failure(exc: Exception, info_only: bool):
    """JSON body for a recovered extraction failure."""
    body = {"error": str(exc)}
    if isinstance(exc, ArtifactNotFoundError):
        body["tried"] = exc.candidates
        body["nearby"] = exc.nearby
    if info_only:
        return jsonify({"available": False, **body})
    return jsonify(body), 500

# ---------------------------------------------------------------------------
#  Flask application factory
# ---------------------------------------------------------------------------


def create_app(nodeodm_url: str | None = None, cache_root: Path | None = None,
               fetcher: ArchiveFetcher | None = None, token: str | None = None,
               ttl: float = CACHE_TTL_SECONDS,
               caches: dict[str, CacheStore] | None = None) -> Flask:
    """Create and configure the Flask application.

    Parameters
    ----------
    nodeodm_url : str or None
        NodeODM root.  Falls back to ``$NODEODM_URL`` then ``http://localhost:3001``.
    cache_root : Path or None
        Parent of the ``odm-*-cache`` directories.  Falls back to
        ``$ODM_CACHE_DIR`` then the system temp directory.
    fetcher : ArchiveFetcher or None
        Override the archive source (tests pass a fake).
    token : str or None
        NodeODM access token.  Falls back to ``$NODEODM_TOKEN``.
    ttl : float
        Cache lifetime in seconds.
    caches : dict or None
        Replace individual cache stores, keyed by cache directory name.
    """
    app = Flask(__name__)

    nodeodm_url = nodeodm_url or os.environ.get("NODEODM_URL") or DEFAULT_NODEODM_URL
    token = token or os.environ.get("NODEODM_TOKEN") or None
    cache_root = Path(cache_root or os.environ.get("ODM_CACHE_DIR") or tempfile.gettempdir())

    if fetcher is None:
        fetcher = ArchiveFetcher(NodeODMClient(nodeodm_url, token=token))

    stores = {name: DiskCache(cache_root / name, ttl=ttl)
              for name in (ORTHOMOSAIC_CACHE, POINTCLOUD_CACHE, MESH_CACHE)}
    stores.update(caches or {})
    ortho_cache = stores[ORTHOMOSAIC_CACHE]
    pointcloud_cache = stores[POINTCLOUD_CACHE]
    mesh_cache = stores[MESH_CACHE]

    app.config["NODEODM_URL"] = nodeodm_url
    app.config["CACHE_ROOT"] = str(cache_root)

    def _binary(data: bytes, content_type: str, cache_status: str, **headers):
        response = app.response_class(data, content_type=content_type)
        response.headers["Cache-Control"] = CACHE_CONTROL
        response.headers["X-Cache"] = cache_status
        for name, value in headers.items():
            response.headers[name.replace("_", "-")] = value
        return response

    # ── Routes ──

    @app.route("/health", methods=["GET"])
    def health():
        """Public health-check endpoint."""
        return jsonify({
            "status": "ok",
            "server": "odm-extract",
            "nodeodm_url": nodeodm_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.route("/orthomosaic/<job_id>", methods=["GET"])
    def orthomosaic(job_id):
        """Return the task orthophoto as PNG."""
        try:
            cached = ortho_cache.get(job_id, "png")
            if cached:
                logger.info("[orthomosaic] Serving cached file for %s", job_id)
                return _binary(cached.read_bytes(), "image/png", "HIT")

            logger.info("[orthomosaic] Processing orthomosaic for %s", job_id)
            directory = fetcher.fetch(job_id)
            entry = resolve(directory, ORTHOMOSAIC)
            png = raster_decoder.to_png(entry.read(), entry.format)
            ortho_cache.put(job_id, "png", png)
            return _binary(png, "image/png", "MISS")
        except (ExtractionError, OSError) as exc:
            logger.exception("[orthomosaic] %s: %s", job_id, exc)
            return _failure(exc, info_only=False)

    def _pointcloud_source(job_id: str) -> tuple[Path, ArtifactFormat, bool]:
        """Cached raw LAS/LAZ file for *job_id*, extracting it on a miss."""
        for ext in _POINTCLOUD_EXTS:
            cached = pointcloud_cache.get(job_id, ext)
            if cached:
                logger.info("[pointcloud] Using cached %s for %s", ext.upper(), job_id)
                return cached, ArtifactFormat.from_ext(ext), True

        directory = fetcher.fetch(job_id)
        entry = resolve(directory, POINTCLOUD)
        fmt = entry.format
        if fmt not in (ArtifactFormat.LAS, ArtifactFormat.LAZ):
            raise UnsupportedFormatError(f"Point cloud '{entry.path}' is not LAS/LAZ")
        path = pointcloud_cache.put(job_id, fmt.ext, entry.read())
        return path, fmt, False

    @app.route("/pointcloud/<job_id>", methods=["GET"])
    def pointcloud(job_id):
        """Point cloud as raw LAS/LAZ, GPU point buffer, or availability info.

        Query parameters: ``info=true``, ``format=points``, ``maxPoints=N``.
        """
        info_only = request.args.get("info") == "true"
        as_points = request.args.get("format") == "points"
        max_points = _parse_max_points(request.args.get("maxPoints"))
        points_key = f"points-{max_points}.bin"

        try:
            if as_points and not info_only:
                cached_points = pointcloud_cache.get(job_id, points_key)
                if cached_points:
                    data = cached_points.read_bytes()
                    try:
                        count = PointCloudBuffer.from_bytes(data).point_count
                    except ExtractionError as exc:
                        logger.warning("[pointcloud] Ignoring corrupt points cache %s: %s",
                                       cached_points, exc)
                    else:
                        logger.info("[pointcloud] Serving cached points for %s", job_id)
                        return _binary(data, "application/octet-stream", "HIT",
                                       X_Point_Count=str(count))

            source, fmt, was_cached = _pointcloud_source(job_id)
            filename = f"pointcloud_{job_id}.{fmt.ext}"

            if info_only:
                size = source.stat().st_size
                return jsonify({
                    "available": True,
                    "filename": filename,
                    "format": fmt.ext,
                    "size": size,
                    "sizeFormatted": format_bytes(size),
                    "cached": was_cached,
                })

            if as_points:
                logger.info("[pointcloud] Converting to points format (max %d)", max_points)
                cloud = pointcloud_decoder.decode(source.read_bytes(), fmt, max_points, source)
                payload = cloud.encode()
                pointcloud_cache.put(job_id, points_key, payload)
                return _binary(payload, "application/octet-stream", "MISS",
                               X_Point_Count=str(cloud.point_count))

            return _binary(source.read_bytes(), fmt.content_type,
                           "HIT" if was_cached else "MISS",
                           Content_Disposition=f'attachment; filename="{filename}"')
        except (ExtractionError, OSError) as exc:
            logger.exception("[pointcloud] %s: %s", job_id, exc)
            return _failure(exc, info_only)

    @app.route("/mesh/<job_id>", methods=["GET"])
    def mesh(job_id):
        """Textured mesh pieces: ``type=mesh|texture|mtl``, optional ``info=true``."""
        info_only = request.args.get("info") == "true"
        subtype = request.args.get("type") or "mesh"
        if subtype not in MESH_DESCRIPTORS:
            abort(400, description=f"Unknown mesh type '{subtype}'. "
                  f"Accepted values: {', '.join(MESH_DESCRIPTORS)}")

        namespace = f"{job_id}_{subtype}"
        cors = {"Access-Control-Allow-Origin": "*"}

        try:
            for ext in CACHE_EXTENSIONS[subtype]:
                cached = mesh_cache.get(namespace, ext)
                if not cached:
                    continue
                logger.info("[mesh] Serving cached %s for %s", subtype, job_id)
                filename = f"{subtype}_{job_id}.{ext}"
                if info_only:
                    size = cached.stat().st_size
                    return jsonify({
                        "available": True,
                        "filename": filename,
                        "size": size,
                        "sizeFormatted": format_bytes(size),
                        "format": ext,
                        "cached": True,
                    })
                response = _binary(cached.read_bytes(), ArtifactFormat.from_ext(ext).content_type,
                                   "HIT", Content_Disposition=f'inline; filename="{filename}"')
                response.headers.update(cors)
                return response

            logger.info("[mesh] Processing %s for %s", subtype, job_id)
            directory = fetcher.fetch(job_id)
            artifact = mesh_extractor.extract(directory, subtype, job_id)
            mesh_cache.put(namespace, artifact.format, artifact.data)

            if info_only:
                return jsonify({
                    "available": True,
                    "filename": artifact.filename,
                    "size": len(artifact.data),
                    "sizeFormatted": format_bytes(len(artifact.data)),
                    "format": artifact.format,
                    "cached": False,
                })
            response = _binary(artifact.data, artifact.content_type, "MISS",
                               Content_Disposition=f'inline; filename="{artifact.filename}"')
            response.headers.update(cors)
            return response
        except (ExtractionError, OSError) as exc:
            logger.exception("[mesh] %s: %s", job_id, exc)
            return _failure(exc, info_only)

    # ── Error handlers ──
    @app.errorhandler(400)
    @app.errorhandler(404)
    @app.errorhandler(405)
    @app.errorhandler(500)
    def handle_error(error):
        return jsonify({
            "error": error.description if hasattr(error, "description") else str(error),
        }), error.code if hasattr(error, "code") else 500

    @app.errorhandler(ValueError)
    def handle_value_error(error):
        return jsonify({"error": str(error)}), 400

    return app

# ---------------------------------------------------------------------------
#  Standalone entry-point
# ---------------------------------------------------------------------------


def start_server(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 nodeodm_url: str | None = None, cache_root: Path | None = None,
                 debug: bool = False):
    """Start the extraction server (blocking call)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    app = create_app(nodeodm_url=nodeodm_url, cache_root=cache_root)
    logger.info("Starting ODM extraction server on http://%s:%d (NodeODM: %s)",
                host, port, app.config["NODEODM_URL"])
    app.run(host=host, port=port, debug=debug, threaded=True)


def main():
    parser = argparse.ArgumentParser(description="NodeODM artifact extraction server")
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"Bind address (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT})")
    parser.add_argument("--nodeodm-url", default=None,
                        help=f"NodeODM base URL (default: $NODEODM_URL or {DEFAULT_NODEODM_URL})")
    parser.add_argument("--cache-dir", default=None, help="Root directory for artifact caches")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    args = parser.parse_args()

    cache_root = Path(args.cache_dir) if args.cache_dir else None
    start_server(host=args.host, port=args.port, nodeodm_url=args.nodeodm_url,
                 cache_root=cache_root, debug=args.debug)


if __name__ == "__main__":
    main()
