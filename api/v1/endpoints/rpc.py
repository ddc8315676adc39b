"""
RPC Endpoint - Request/response channel

Serves queries (GET) and mutations (POST) registered on the operation
router, singly or batched (tRPC HTTP batch wire shape).

@.architecture
Incoming: api/v1/router.py, client/links.py (HttpBatchLink) --- {HTTP GET/POST /v1/rpc/{paths}, ?batch=1, JSON input keyed "0", "1", ...}
Processing: rpc(), _parse_inputs(), _run_one() --- {4 jobs: input_parsing, kind_enforcement, batch_execution, error_serialization}
Outgoing: core/sync/router.py (router.call), Frontend (HTTP) --- {[{"result": {"data": ...}} | {"error": {...}}], status 200/207/error status}

Examples:
    GET  /v1/rpc/health.check
    GET  /v1/rpc/health.check,chat.hello?batch=1&input={"0":null,"1":null}
    POST /v1/rpc/chat.sendMessage?batch=1   {"0": {"conversationId": "c1", "messages": [...]}}
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_operation_router, setup_request_context
from api.v1.schemas.common import ErrorResponse
from core.sync.errors import InvalidInputError, OperationKindError, SyncError
from core.sync.router import OperationKind, OperationRouter
from monitoring import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["rpc"])

_METHOD_KINDS = {
    "GET": OperationKind.QUERY,
    "POST": OperationKind.MUTATION,
}


def _parse_inputs(raw: Any, paths: List[str], batch: bool) -> List[Any]:
    if not batch:
        return [raw]
    if raw is None:
        return [None] * len(paths)
    if not isinstance(raw, dict):
        raise InvalidInputError('Batch input must be an object keyed "0", "1", ...')
    return [raw.get(str(i)) for i in range(len(paths))]


async def _run_one(op_router: OperationRouter, method: str, path: str, raw_input: Any) -> Dict[str, Any]:
    try:
        kind = op_router.kind_of(path)
        if kind is OperationKind.SUBSCRIPTION:
            raise OperationKindError(
                f"Subscription \"{path}\" is only available over the WebSocket channel", path=path
            )
        if kind is not _METHOD_KINDS[method]:
            raise OperationKindError(
                f"Unsupported {method}-request to {kind.value} procedure at path \"{path}\"", path=path
            )
        data = await op_router.call(path, raw_input)
        return {"result": {"data": data}}

    except SyncError as e:
        if e.path is None:
            e.path = path
        logger.info(f"{method} {path} failed: {e.code} {e.message}")
        return {"error": e.to_dict()}

    except Exception as e:
        logger.error(f"Unexpected error in {path}: {e}", exc_info=True)
        return {"error": SyncError("Internal server error", path=path).to_dict()}


@router.api_route(
    "/rpc/{paths:path}",
    methods=["GET", "POST"],
    summary="Run queries and mutations",
    responses={
        400: {"model": ErrorResponse, "description": "Malformed input"},
        404: {"model": ErrorResponse, "description": "Unknown procedure"},
        405: {"model": ErrorResponse, "description": "Procedure kind not carried by this method"},
        409: {"model": ErrorResponse, "description": "Assistant turn already in flight"},
    },
)
async def rpc(
    request: Request,
    paths: str,
    batch: Optional[str] = Query(None),
    input: Optional[str] = Query(None, description="JSON-encoded input (GET)"),
    op_router: OperationRouter = Depends(get_operation_router),
    _context: dict = Depends(setup_request_context),
) -> JSONResponse:
    is_batch = batch in ("1", "true")
    # Batch index i always maps to path i, including empty entries
    path_list = paths.split(",") if is_batch else [paths]

    try:
        if request.method == "GET":
            raw = json.loads(input) if input else None
        else:
            body = await request.body()
            raw = json.loads(body) if body else None
    except json.JSONDecodeError as e:
        error = {"code": "PARSE_ERROR", "message": f"Input is not valid JSON: {e}", "httpStatus": 400}
        return JSONResponse(status_code=400, content=[{"error": error}] if is_batch else {"error": error})

    try:
        inputs = _parse_inputs(raw, path_list, is_batch)
    except SyncError as e:
        return JSONResponse(status_code=e.status_code, content=[{"error": e.to_dict()}])

    results = await asyncio.gather(*[
        _run_one(op_router, request.method, path, raw_input)
        for path, raw_input in zip(path_list, inputs)
    ])

    failed = [r["error"]["httpStatus"] for r in results if "error" in r]
    if not is_batch:
        status_code = failed[0] if failed else 200
        return JSONResponse(status_code=status_code, content=results[0])

    if not failed:
        status_code = 200
    elif len(results) == 1:
        status_code = failed[0]
    else:
        status_code = 207
    return JSONResponse(status_code=status_code, content=list(results))
