"""
FastAPI binding for the RESTful router.

Claims every path below the router's endpoint and hands it to
`Router.handle_request`. Query string parameters:
- where:  JSON object, e.g. where={"name":{"$like":"photo%"}}
- order:  e.g. order=name DESC
- offset / limit
"""

from __future__ import annotations

import json
from urllib.parse import quote

from fastapi import APIRouter, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .schemas import METHODS
from .service import Envelope, Router

_ERROR_STATUS = {
    "routing": status.HTTP_404_NOT_FOUND,
    "not_found": status.HTTP_404_NOT_FOUND,
    "bad_request": status.HTTP_400_BAD_REQUEST,
    "conflict": status.HTTP_409_CONFLICT,
    "data_layer": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_QUERY_KEYS = ("where", "order", "offset", "limit")


def _requote(resource_path: str) -> str:
    # Starlette has already decoded the path; Router.parse_path decodes once more.
    return "/".join(quote(segment, safe="") for segment in resource_path.split("/"))


def status_code_for(method: str, envelope: Envelope) -> int:
    if envelope.get("status") == "success":
        return status.HTTP_201_CREATED if method == "POST" else status.HTTP_200_OK
    kind = (envelope.get("data") or {}).get("error")
    return _ERROR_STATUS.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"status": "error", "data": {"error": "bad_request", "message": message}},
    )


def build_router(restful: Router) -> APIRouter:
    router = APIRouter()

    @router.api_route(restful.endpoint + "/{resource_path:path}", methods=list(METHODS))
    async def handle(resource_path: str, request: Request) -> JSONResponse:
        body = None
        if request.method in {"POST", "PUT", "PATCH"}:
            raw = await request.body()
            if raw:
                try:
                    body = json.loads(raw)
                except ValueError:
                    return _error_response("Request body is not valid JSON.")
                if not isinstance(body, dict):
                    return _error_response("Request body must be a JSON object.")

        query = {key: request.query_params[key] for key in _QUERY_KEYS if key in request.query_params}
        envelope = await restful.handle_request(
            {
                "method": request.method,
                "path": f"{restful.endpoint}/{_requote(resource_path)}",
                "query": query or None,
                "body": body,
            }
        )
        return JSONResponse(
            status_code=status_code_for(request.method, envelope),
            content=jsonable_encoder(envelope),
        )

    return router
