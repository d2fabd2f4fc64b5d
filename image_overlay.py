# image_overlay.py
from __future__ import annotations

import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Optional, Tuple

import certifi
import httpx
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from overlay_config import OverlayConfig, RenderRequest, StyleParams
from overlay_errors import InputError, OverlayError
from overlay_pipeline import OverlayPipeline
from result_cache import BaseResultCache, RenderedImage, is_valid_image_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["image-overlay"])

DEFAULT_CAPTION = "Default Caption"

IMAGE_HEADERS = {
    "Cache-Control": "public, max-age=31536000, immutable",
    # Instagram's container API fetches these from outside
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


# ----------------------------
# Request / Response models
# ----------------------------

class OverlayFromUrlRequest(BaseModel):
    image_url: str = Field(..., description="Source image URL")
    caption: str = Field(DEFAULT_CAPTION, description="Caption text")
    font_family: Optional[str] = Field(None, description="Font family hint; only the svg backend uses it")
    font_size: Optional[int] = Field(None, ge=6, le=200)
    padding: Optional[int] = Field(None, ge=0, le=200)
    corner_radius: Optional[int] = Field(None, ge=0, le=200)
    shift_up: Optional[int] = Field(None, ge=0, le=2000)
    width: Optional[int] = Field(None, ge=16, le=4096)
    height: Optional[int] = Field(None, ge=16, le=4096)
    output: str = Field("url", description="url (JSON with imageUrl) or image (JPEG bytes)")

    def style(self, cfg: OverlayConfig) -> StyleParams:
        return cfg.style(
            font_family=self.font_family,
            font_size_px=self.font_size,
            padding_px=self.padding,
            corner_radius_px=self.corner_radius,
            shift_up_px=self.shift_up,
            output_width_px=self.width,
            output_height_px=self.height,
        )


class OverlayResponse(BaseModel):
    success: bool
    imageId: str
    imageUrl: str
    size: int


class CleanupResponse(BaseModel):
    success: bool
    message: str
    deletedCount: int
    totalCount: int


# ----------------------------
# Helpers
# ----------------------------

def _pipeline(request: Request) -> OverlayPipeline:
    return request.app.state.pipeline


def _cache(request: Request) -> BaseResultCache:
    return request.app.state.result_cache


def _config(request: Request) -> OverlayConfig:
    return request.app.state.config


def _error_detail(e: OverlayError) -> HTTPException:
    status = 400 if isinstance(e, InputError) else 500
    return HTTPException(status_code=status, detail=e.to_dict())


def _http_error(status: int, kind: str, message: str) -> HTTPException:
    return HTTPException(status_code=status, detail={"error": kind, "message": message})


def _public_url(request: Request, image_id: str) -> str:
    base = _config(request).public_base_url or str(request.base_url).rstrip("/")
    return f"{base}/images/{image_id}.jpg"


def _decode_raw_body(body: bytes, content_type: str) -> bytes:
    """Binary bodies pass through; anything else is expected to be base64."""
    if content_type.startswith(("application/octet-stream", "image/")):
        return body
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InputError(f"Request body is neither binary image data nor valid base64: {e}")


async def _read_overlay_input(request: Request) -> Tuple[bytes, str, Optional[str]]:
    content_type = (request.headers.get("content-type") or "").lower()

    if "multipart/form-data" in content_type:
        form = await request.form()
        upload = form.get("image")
        if upload is None:
            upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise InputError('Image file not found in multipart form data. Please use field name "image" or "file".')
        image_bytes = await upload.read()
        caption = str(form.get("caption") or DEFAULT_CAPTION)
        font_family = form.get("fontFamily") or None
        return image_bytes, caption, (str(font_family) if font_family else None)

    body = await request.body()
    caption = request.headers.get("x-caption") or DEFAULT_CAPTION
    font_family = request.headers.get("x-font-family")
    return _decode_raw_body(body, content_type), caption, font_family


async def fetch_image_bytes(url: str) -> bytes:
    try:
        async with httpx.AsyncClient(verify=certifi.where(), timeout=25) as client:
            r = await client.get(url, follow_redirects=True)
            r.raise_for_status()
            return r.content
    except httpx.HTTPError as e:
        raise _http_error(400, "fetch_error", f"Failed to fetch image: {url} ({e})")


async def _respond(request: Request, req: RenderRequest, output: str):
    output = (output or "url").lower().strip()
    if output not in ("url", "image"):
        raise _http_error(400, "input_error", "output must be url or image")

    pipeline = _pipeline(request)
    logger.info("Rendering overlay: caption=%r (%d bytes in)", req.caption, len(req.source_image))
    try:
        image_id, image = await pipeline.render_async(req, store=(output == "url"))
    except OverlayError as e:
        logger.error("Image processing failed: %s", e)
        raise _error_detail(e)

    if output == "image":
        return _stream(image)

    return OverlayResponse(
        success=True,
        imageId=image_id,
        imageUrl=_public_url(request, image_id),
        size=image.byte_length,
    )


def _stream(image: RenderedImage, extra_headers: Optional[dict] = None) -> StreamingResponse:
    headers = {"Content-Length": str(image.byte_length)}
    headers.update(extra_headers or {"Cache-Control": "no-cache"})
    return StreamingResponse(io.BytesIO(image.data), media_type=image.mime_type, headers=headers)


# ----------------------------
# FastAPI endpoints
# ----------------------------

@router.post("/overlay", summary="Render caption overlay from multipart upload or raw body")
async def overlay_endpoint(request: Request, output: str = Query("url")):
    try:
        image_bytes, caption, font_family = await _read_overlay_input(request)
        style = _config(request).style(font_family=font_family)
    except OverlayError as e:
        raise _error_detail(e)

    req = RenderRequest(source_image=image_bytes, caption=caption, style=style)
    return await _respond(request, req, output)


@router.post("/overlay/from-url", summary="Render caption overlay onto an image fetched by URL")
async def overlay_from_url_endpoint(request: Request, body: OverlayFromUrlRequest):
    try:
        style = body.style(_config(request))
    except OverlayError as e:
        raise _error_detail(e)
    image_bytes = await fetch_image_bytes(body.image_url)
    req = RenderRequest(source_image=image_bytes, caption=body.caption, style=style)
    return await _respond(request, req, body.output)


@router.get("/images/{image_ref}", summary="Serve a rendered overlay by id")
async def serve_image(request: Request, image_ref: str):
    image_id = image_ref[:-4] if image_ref.endswith(".jpg") else image_ref
    if not is_valid_image_id(image_id):
        raise _http_error(400, "input_error", "Invalid image ID. Expected: /images/:id.jpg")

    logger.info("[IMAGE] Serving image ID: %s", image_id)
    # disk and b2 caches do blocking I/O
    image = await run_in_threadpool(_cache(request).get, image_id)
    if image is None:
        raise _http_error(404, "not_found", f"Image not found: {image_id}")
    return _stream(image, IMAGE_HEADERS)


@router.get("/images", summary="List cached overlay ids")
async def list_images(request: Request, prefix: str = ""):
    ids = await run_in_threadpool(_cache(request).list_ids, prefix)
    return {"count": len(ids), "ids": ids}


@router.post("/cleanup", response_model=CleanupResponse, summary="Delete expired overlays now")
async def cleanup_endpoint(request: Request):
    result = await run_in_threadpool(_cache(request).sweep)
    deleted, total = result["deletedCount"], result["totalCount"]
    return CleanupResponse(
        success=True,
        message=f"Cleanup complete: {deleted}/{total} files deleted",
        deletedCount=deleted,
        totalCount=total,
    )


@router.get("/debug/font")
def debug_font(request: Request):
    fonts = _pipeline(request).fonts
    return {
        "configured": _config(request).font_path,
        "resolved": fonts.font_path,
        "exists": bool(fonts.font_path) and Path(fonts.font_path).exists(),
        "available": fonts.available,
        "backend": _pipeline(request).compositor.backend.name,
    }
