"""
RESTful request routing.

Grammar (below the configured endpoint, "/api" by default):

    /<Model>                              GET list | POST create | HEAD describe
    /<Model>/<id>                         GET | PUT | PATCH | DELETE
    /<Model>/<id>/<Association>           GET related | DELETE unlink
    /<Model>/<id>/<Association>/<id>      DELETE unlink one

Every request resolves to an envelope:
    {"status": "success", "data": ...[, "count", "offset", "limit"]}
    {"status": "error", "data": {"error": <kind>, "message": ...}}
"""

from __future__ import annotations

import inspect
import logging
import os
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from pydantic import ValidationError

from .errors import BadRequestError, DataLayerError, NotFoundError, RestfulError, RoutingError
from .provider import AssociationInfo, DataModelProvider, ModelHandle
from .query import parse_list_query
from .schemas import RestfulRequest

DEFAULT_ENDPOINT = "/api"

logger = logging.getLogger(__name__)

Envelope = dict[str, Any]
Callback = Callable[[Envelope], Awaitable[None] | None]


def restful_endpoint() -> str:
    return os.environ.get("RESTFUL_ENDPOINT", DEFAULT_ENDPOINT).strip() or DEFAULT_ENDPOINT


def restful_allowed_models() -> frozenset[str] | None:
    raw = os.environ.get("RESTFUL_ALLOWED_MODELS", "").strip()
    if not raw:
        return None
    return frozenset(name.strip() for name in raw.split(",") if name.strip())


def _normalize_endpoint(endpoint: str | None) -> str:
    endpoint = (endpoint or DEFAULT_ENDPOINT).strip().rstrip("/")
    # "/" mounts the router at the root, i.e. an empty prefix.
    if endpoint and not endpoint.startswith("/"):
        endpoint = "/" + endpoint
    return endpoint


@dataclass(frozen=True)
class RouterOptions:
    endpoint: str = DEFAULT_ENDPOINT
    # Model or table names to expose; None exposes everything the provider has.
    allowed: frozenset[str] | None = None

    @classmethod
    def from_env(cls) -> "RouterOptions":
        return cls(endpoint=restful_endpoint(), allowed=restful_allowed_models())

    @classmethod
    def coerce(cls, options: "RouterOptions | Mapping[str, Any] | None") -> "RouterOptions":
        if isinstance(options, RouterOptions):
            return options
        options = options or {}
        allowed = options.get("allowed")
        return cls(
            endpoint=options.get("endpoint") or DEFAULT_ENDPOINT,
            allowed=frozenset(allowed) if allowed is not None else None,
        )


@dataclass(frozen=True)
class RoutePath:
    model: str
    instance_id: str | None = None
    association: str | None = None
    association_id: str | None = None


def _success(data: Any, **extra: Any) -> Envelope:
    return {"status": "success", "data": data, **extra}


def _done() -> Envelope:
    return {"status": "success"}


def _error(exc: RestfulError) -> Envelope:
    return {"status": "error", "data": {"error": exc.kind, "message": str(exc)}}


class Router:
    def __init__(
        self,
        provider: DataModelProvider | None = None,
        options: RouterOptions | Mapping[str, Any] | None = None,
    ) -> None:
        self.options = RouterOptions.coerce(options)
        self.endpoint = _normalize_endpoint(self.options.endpoint)
        self._pattern = re.compile(r"^" + re.escape(self.endpoint) + r"/([^/?#]+)")
        self._registry = self._build_registry(provider.models() if provider is not None else ())

    def _build_registry(self, handles: Iterable[ModelHandle]) -> dict[str, ModelHandle]:
        allowed = {name.lower() for name in self.options.allowed} if self.options.allowed is not None else None
        registry: dict[str, ModelHandle] = {}
        for handle in handles:
            keys = {handle.name.lower(), handle.table_name.lower()}
            if allowed is not None and not keys & allowed:
                continue
            for key in keys:
                registry[key] = handle
        return registry

    @property
    def model_names(self) -> list[str]:
        return sorted({handle.name for handle in self._registry.values()})

    def is_restful_request(self, path: str) -> bool:
        return bool(self._pattern.match(path or ""))

    def parse_path(self, path: str) -> RoutePath:
        if not self.is_restful_request(path):
            raise RoutingError(f"Path '{path}' is not below '{self.endpoint}'.")

        rest = path[len(self.endpoint) :].split("?", 1)[0].split("#", 1)[0]
        segments = [unquote(s) for s in rest.strip("/").split("/")]
        if any(not s for s in segments) or len(segments) > 4:
            raise RoutingError(f"Path '{path}' does not match {self.endpoint}/<Model>[/<id>[/<Association>[/<id>]]].")
        return RoutePath(*segments)

    def resolve_model(self, name: str) -> ModelHandle:
        handle = self._registry.get(name.lower())
        if handle is None:
            raise RoutingError(f"Unknown model '{name}'.")
        return handle

    async def handle_request(
        self,
        request: RestfulRequest | Mapping[str, Any],
        callback: Callback | None = None,
    ) -> Envelope:
        """
        Route one request and resolve to its envelope. `callback`, when
        given, is called exactly once with the same envelope.
        """
        method = "?"
        path = ""
        try:
            req = request if isinstance(request, RestfulRequest) else RestfulRequest.model_validate(request)
            method, path = req.method, req.path
            envelope = await self._dispatch(req)
        except ValidationError as exc:
            envelope = _error(BadRequestError(f"Malformed request: {exc.error_count()} validation error(s)."))
        except RestfulError as exc:
            logger.info("restful_rejected method=%s path=%s kind=%s reason=%s", method, path, exc.kind, exc)
            envelope = _error(exc)
        except Exception as exc:
            logger.exception("restful_failed method=%s path=%s", method, path)
            envelope = _error(DataLayerError(str(exc) or type(exc).__name__))
        else:
            logger.debug("restful_request method=%s path=%s", method, path)

        if callback is not None:
            result = callback(envelope)
            if inspect.isawaitable(result):
                await result
        return envelope

    async def _dispatch(self, req: RestfulRequest) -> Envelope:
        route = self.parse_path(req.path)
        handle = self.resolve_model(route.model)
        method = req.method

        if route.instance_id is None:
            if method == "GET":
                return await self._list(handle, req.query)
            if method == "POST":
                return _success(await handle.create(_body(req)))
            if method == "HEAD":
                return _success(handle.describe().as_dict())
        else:
            pk = handle.coerce_id(route.instance_id)
            if route.association is None:
                if method == "GET":
                    return _success(_found(await handle.find(pk), handle, pk))
                if method in {"PUT", "PATCH"}:
                    return _success(_found(await handle.update(pk, _body(req)), handle, pk))
                if method == "DELETE":
                    if not await handle.destroy(pk):
                        raise _not_found(handle, pk)
                    return _done()
            else:
                association = _association(handle, route.association)
                if route.association_id is None:
                    if method == "GET":
                        return _success(await handle.get_association(pk, association.name))
                    if method == "DELETE":
                        await handle.clear_association(pk, association.name)
                        return _done()
                elif method == "DELETE":
                    # A related id that is not currently linked leaves everything untouched.
                    await handle.clear_association(pk, association.name, route.association_id)
                    return _done()

        raise RoutingError(f"Method {method} is not supported on '{req.path}'.")

    async def _list(self, handle: ModelHandle, query: Mapping[str, Any] | None) -> Envelope:
        list_query = parse_list_query(query, handle.attribute_names)
        rows = await handle.find_all(list_query)
        if not list_query.paginated:
            return _success(rows)

        total = await handle.count(list_query.conditions)
        return _success(rows, count=total, offset=list_query.offset or 0, limit=list_query.limit)


def _body(req: RestfulRequest) -> dict[str, Any]:
    return dict(req.body or {})


def _not_found(handle: ModelHandle, pk: Any) -> NotFoundError:
    return NotFoundError(f"{handle.name} with id '{pk}' not found.")


def _association(handle: ModelHandle, name: str) -> AssociationInfo:
    association = handle.association(name)
    if association is None:
        raise NotFoundError(f"{handle.name} has no association '{name}'.")
    return association


def _found(row: Any, handle: ModelHandle, pk: Any) -> Any:
    if row is None:
        raise _not_found(handle, pk)
    return row
