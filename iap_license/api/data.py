"""Per-user data endpoints (meals, person lists, venue lists, receipt images).

Implements, for each kind in (meal, personlist, venuelist):
- PUT /{kind}/{name}      form fields: data (and summary for meals)
- GET /{kind}/{name}
- DELETE /{kind}/{name}
- GET /{kind}s?top=&before=

and for images:
- PUT /image/{name}
- GET /image/{name}
- DELETE /image/{name}

Every route needs a live token or a pro license claim; data is partitioned
by the authorized user key.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import PlainTextResponse

from iap_license.api.dependencies import (
    attach_token,
    bad_request,
    error_detail,
    get_config,
    require_pro_user,
)
from iap_license.config import Config
from iap_license.logging_config import get_logger
from iap_license.models import (
    MEAL_STORAGE,
    PERSON_LIST_STORAGE,
    VENUE_LIST_STORAGE,
    AuthorizationResult,
    StoredItemSummary,
)
from iap_license.repositories.data_store import (
    MAX_ENUMERATE_ITEMS,
    DataStore,
    ImageStore,
    InvalidItemNameError,
    ItemNotFoundError,
)

logger = get_logger(__name__)
router = APIRouter(tags=["Data"])

KIND_STORAGE = {
    "meal": MEAL_STORAGE,
    "personlist": PERSON_LIST_STORAGE,
    "venuelist": VENUE_LIST_STORAGE,
}


def _not_found(message: str) -> HTTPException:
    return HTTPException(status_code=404, detail=error_detail(404, message, "NOT_FOUND"))


def _data_store(request: Request, kind: str) -> DataStore:
    return request.app.state.data_stores[kind]


def _image_store(request: Request) -> ImageStore:
    return request.app.state.image_store


def _register_kind(kind: str) -> None:
    storage = KIND_STORAGE[kind]

    @router.put(f"/{kind}/{{name}}", name=f"put_{kind}")
    def put_item(
        name: str,
        request: Request,
        response: Response,
        data: str = Form(...),
        summary: Optional[str] = Form(None),
        auth: AuthorizationResult = Depends(require_pro_user),
        config: Config = Depends(get_config),
    ) -> dict:
        try:
            _data_store(request, kind).put(auth.user_key, name, data, summary=summary)
        except ValueError as e:
            raise bad_request(str(e))
        attach_token(response, auth, config.headers.token)
        return {"stored": True, "name": name}

    @router.get(f"/{kind}/{{name}}", response_class=PlainTextResponse, name=f"get_{kind}")
    def get_item(
        name: str,
        request: Request,
        auth: AuthorizationResult = Depends(require_pro_user),
        config: Config = Depends(get_config),
    ) -> PlainTextResponse:
        try:
            data = _data_store(request, kind).get(auth.user_key, name)
        except InvalidItemNameError as e:
            raise bad_request(str(e))
        except ItemNotFoundError as e:
            raise _not_found(str(e))
        response = PlainTextResponse(data)
        attach_token(response, auth, config.headers.token)
        return response

    @router.delete(f"/{kind}/{{name}}", name=f"delete_{kind}")
    def delete_item(
        name: str,
        request: Request,
        response: Response,
        auth: AuthorizationResult = Depends(require_pro_user),
        config: Config = Depends(get_config),
    ) -> dict:
        try:
            _data_store(request, kind).delete(auth.user_key, name)
        except InvalidItemNameError as e:
            raise bad_request(str(e))
        except ItemNotFoundError as e:
            raise _not_found(str(e))
        attach_token(response, auth, config.headers.token)
        return {"deleted": True, "name": name}

    @router.get(f"/{kind}s", response_model=List[StoredItemSummary], name=f"enumerate_{kind}s")
    def enumerate_items(
        request: Request,
        response: Response,
        top: int = Query(..., description=f"Page size, 1..{MAX_ENUMERATE_ITEMS}"),
        before: Optional[str] = Query(None, description="Only items named earlier than this"),
        auth: AuthorizationResult = Depends(require_pro_user),
        config: Config = Depends(get_config),
    ) -> List[StoredItemSummary]:
        try:
            items = _data_store(request, kind).enumerate(auth.user_key, top, before=before)
        except ValueError as e:
            raise bad_request(str(e))
        attach_token(response, auth, config.headers.token)
        logger.info("items_enumerated", table=storage.table_name, count=len(items), before=before)
        return items


for _kind in KIND_STORAGE:
    _register_kind(_kind)


@router.put("/image/{name}")
def put_image(
    name: str,
    request: Request,
    response: Response,
    image: UploadFile = File(...),
    auth: AuthorizationResult = Depends(require_pro_user),
    config: Config = Depends(get_config),
) -> dict:
    content = image.file.read()
    if not content:
        raise bad_request("Image is empty")
    try:
        _image_store(request).put(
            auth.user_key, name, content, content_type=image.content_type or "image/jpeg"
        )
    except InvalidItemNameError as e:
        raise bad_request(str(e))
    attach_token(response, auth, config.headers.token)
    return {"stored": True, "name": name, "size": len(content)}


@router.get("/image/{name}")
def get_image(
    name: str,
    request: Request,
    auth: AuthorizationResult = Depends(require_pro_user),
    config: Config = Depends(get_config),
) -> Response:
    try:
        found = _image_store(request).get(auth.user_key, name)
    except InvalidItemNameError as e:
        raise bad_request(str(e))
    if found is None:
        raise _not_found(f"Image {name} not found")
    content, content_type = found
    response = Response(content=content, media_type=content_type)
    attach_token(response, auth, config.headers.token)
    return response


@router.delete("/image/{name}")
def delete_image(
    name: str,
    request: Request,
    response: Response,
    auth: AuthorizationResult = Depends(require_pro_user),
    config: Config = Depends(get_config),
) -> dict:
    try:
        deleted = _image_store(request).delete(auth.user_key, name)
    except InvalidItemNameError as e:
        raise bad_request(str(e))
    if not deleted:
        raise _not_found(f"Image {name} not found")
    attach_token(response, auth, config.headers.token)
    return {"deleted": True, "name": name}
