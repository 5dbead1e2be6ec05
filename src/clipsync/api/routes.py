from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from clipsync import API_VERSION
from clipsync.api.auth import resolve_identity
from clipsync.errors import ValidationFailed
from clipsync.models.devices import Identity
from clipsync.services.clip_service import ClipService, parse_flag

router = APIRouter(prefix=f"/{API_VERSION}")

IMMUTABLE_CACHE = "public, max-age=31536000, immutable"


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"ok": True, "data": jsonable_encoder(data)}, status_code=status_code)


def get_service(request: Request) -> ClipService:
    return request.app.state.service


def get_identity(request: Request) -> Identity:
    return resolve_identity(request, request.app.state.config)


async def read_json(request: Request) -> Any:
    body = await request.body()
    if not body.strip():
        return None
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationFailed("INVALID_JSON", "request body must be valid JSON") from e


@router.get("/health")
def health(service: ClipService = Depends(get_service)):
    return ok(service.health())


# ==================== CLIPS ====================

@router.get("/clips")
def list_clips(
    q: Optional[str] = None,
    tag: Optional[str] = None,
    favorite: Optional[str] = None,
    include_deleted: Optional[str] = Query(None, alias="includeDeleted"),
    cursor: Optional[str] = None,
    limit: Optional[str] = None,
    lite: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    service: ClipService = Depends(get_service),
):
    page = service.list_clips(
        identity,
        q=q,
        tag=tag,
        favorite=favorite,
        include_deleted=include_deleted,
        cursor=cursor,
        limit=limit,
        lite=parse_flag(lite),
    )
    return ok(page)


@router.get("/clips/{clip_id}")
def get_clip(clip_id: str, identity: Identity = Depends(get_identity), service: ClipService = Depends(get_service)):
    return ok(service.get_clip(identity, clip_id))


@router.post("/clips")
async def create_clip(request: Request, identity: Identity = Depends(get_identity),
                      service: ClipService = Depends(get_service)):
    payload = await read_json(request)
    return ok(service.create_clip(identity, payload), status_code=201)


@router.patch("/clips/{clip_id}")
async def update_clip(clip_id: str, request: Request, identity: Identity = Depends(get_identity),
                      service: ClipService = Depends(get_service)):
    payload = await read_json(request)
    return ok(service.update_clip(identity, clip_id, payload))


@router.delete("/clips/{clip_id}")
async def delete_clip(clip_id: str, request: Request, identity: Identity = Depends(get_identity),
                      service: ClipService = Depends(get_service)):
    payload = await read_json(request)
    return ok(service.delete_clip(identity, clip_id, payload))


# ==================== TAGS ====================

@router.get("/tags")
def list_tags(identity: Identity = Depends(get_identity), service: ClipService = Depends(get_service)):
    return ok({"items": service.list_tags(identity)})


@router.post("/tags")
async def create_tag(request: Request, identity: Identity = Depends(get_identity),
                     service: ClipService = Depends(get_service)):
    payload = await read_json(request)
    return ok(service.create_tag(identity, payload), status_code=201)


@router.delete("/tags/{tag_id}")
def delete_tag(tag_id: str, identity: Identity = Depends(get_identity), service: ClipService = Depends(get_service)):
    return ok(service.delete_tag(identity, tag_id))


# ==================== SYNC ====================

@router.get("/sync/pull")
def sync_pull(
    since: Optional[str] = None,
    limit: Optional[str] = None,
    lite: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    service: ClipService = Depends(get_service),
):
    return ok(service.pull(identity, since=since, limit=limit, lite=parse_flag(lite)))


@router.post("/sync/push")
async def sync_push(request: Request, identity: Identity = Depends(get_identity),
                    service: ClipService = Depends(get_service)):
    payload = await read_json(request)
    return ok(service.push(identity, payload))


# ==================== IMAGES ====================

@router.get("/images/{clip_id}")
def get_image(
    clip_id: str,
    owner: Optional[str] = None,
    hash: Optional[str] = None,
    service: ClipService = Depends(get_service),
):
    data, mime, immutable = service.read_image(owner, clip_id, hash)
    headers = {"Cache-Control": IMMUTABLE_CACHE if immutable else "no-cache"}
    return Response(content=data, media_type=mime, headers=headers)
