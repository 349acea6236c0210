"""
Errors raised while routing a RESTful request.

Each error carries a `kind` which ends up in the error envelope and is what
transport bindings map to a status code.
"""

from __future__ import annotations


class RestfulError(RuntimeError):
    kind = "error"


class RoutingError(RestfulError):
    kind = "routing"


class NotFoundError(RestfulError):
    kind = "not_found"


class BadRequestError(RestfulError):
    kind = "bad_request"


# Malformed where/order/offset/limit.
class QueryError(BadRequestError):
    pass


class ConflictError(RestfulError):
    kind = "conflict"


class DataLayerError(RestfulError):
    kind = "data_layer"
