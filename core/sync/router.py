"""
Operation Router - Named procedures and the channel each kind travels on

@.architecture
Incoming: core/sync/procedures.py, api/v1/endpoints/rpc.py, ws/handlers.py --- {dotted procedure path, raw JSON input}
Processing: query(), mutation(), subscription(), merge(), call(), open() --- {4 jobs: registration, input_validation, kind_enforcement, dispatch}
Outgoing: api/v1/endpoints/rpc.py, ws/handlers.py --- {JSON-ready results, async iterators of subscription data}

Kinds:
    query, mutation  -> request/response channel (HTTP batch, WS request frames)
    subscription     -> duplex channel only (WebSocket)
"""

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from core.sync.errors import InvalidInputError, OperationKindError, UnknownOperationError

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    QUERY = "query"
    MUTATION = "mutation"
    SUBSCRIPTION = "subscription"

    @property
    def is_request_response(self) -> bool:
        return self is not OperationKind.SUBSCRIPTION


def serialize(value: Any) -> Any:
    """Convert procedure results to JSON-ready data (camelCase models)."""
    if hasattr(value, "to_wire"):
        return value.to_wire()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    return value


@dataclass
class Procedure:
    """
    A registered operation.

    Attributes:
        path: Dotted name, e.g. "chat.sendMessage"
        kind: Operation kind
        handler: Called with the validated input (or None without a model)
        input_model: Optional pydantic model validating the raw input
    """
    path: str
    kind: OperationKind
    handler: Callable[[Any], Any]
    input_model: Optional[Type[BaseModel]] = None

    def parse_input(self, raw_input: Any) -> Any:
        if self.input_model is None:
            return raw_input
        try:
            return self.input_model.model_validate(raw_input if raw_input is not None else {})
        except ValidationError as e:
            issues = [
                {"path": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
                for err in e.errors()
            ]
            detail = "; ".join(
                f"{issue['path']}: {issue['message']}" if issue["path"] else issue["message"]
                for issue in issues
            )
            raise InvalidInputError(
                f"Invalid input for {self.path}: {detail}", path=self.path, issues=issues
            ) from e


class OperationRouter:
    """
    Registry of procedures keyed by dotted path.

    Usage:
        router = OperationRouter()

        @router.query("hello")
        async def hello(_):
            return "hi"

        app_router = OperationRouter().merge("chat", router)
        await app_router.call("chat.hello", None)
    """

    def __init__(self):
        self._procedures: Dict[str, Procedure] = {}

    # Registration

    def add(self, procedure: Procedure) -> Procedure:
        if procedure.path in self._procedures:
            raise ValueError(f"Procedure already registered: {procedure.path}")
        self._procedures[procedure.path] = procedure
        return procedure

    def _register(self, kind: OperationKind, path: str, input_model: Optional[Type[BaseModel]]):
        def decorator(handler: Callable[[Any], Any]) -> Callable[[Any], Any]:
            self.add(Procedure(path=path, kind=kind, handler=handler, input_model=input_model))
            return handler
        return decorator

    def query(self, path: str, input_model: Optional[Type[BaseModel]] = None):
        return self._register(OperationKind.QUERY, path, input_model)

    def mutation(self, path: str, input_model: Optional[Type[BaseModel]] = None):
        return self._register(OperationKind.MUTATION, path, input_model)

    def subscription(self, path: str, input_model: Optional[Type[BaseModel]] = None):
        return self._register(OperationKind.SUBSCRIPTION, path, input_model)

    def merge(self, prefix: str, other: "OperationRouter") -> "OperationRouter":
        """Mount every procedure of ``other`` under ``prefix.``"""
        for procedure in other._procedures.values():
            self.add(Procedure(
                path=f"{prefix}.{procedure.path}" if prefix else procedure.path,
                kind=procedure.kind,
                handler=procedure.handler,
                input_model=procedure.input_model,
            ))
        return self

    # Lookup

    def get(self, path: str) -> Procedure:
        procedure = self._procedures.get(path)
        if procedure is None:
            raise UnknownOperationError(f"No procedure found on path \"{path}\"", path=path)
        return procedure

    def kind_of(self, path: str) -> OperationKind:
        return self.get(path).kind

    def paths(self) -> List[str]:
        return sorted(self._procedures.keys())

    # Dispatch

    async def call(self, path: str, raw_input: Any = None) -> Any:
        """
        Run a query or mutation.

        Returns:
            JSON-ready result data

        Raises:
            UnknownOperationError, OperationKindError, InvalidInputError,
            or whatever the handler raises
        """
        procedure = self.get(path)
        if not procedure.kind.is_request_response:
            raise OperationKindError(
                f"Subscription \"{path}\" must be opened over the WebSocket channel", path=path
            )

        result = procedure.handler(procedure.parse_input(raw_input))
        if inspect.isawaitable(result):
            result = await result
        return serialize(result)

    async def open(self, path: str, raw_input: Any = None) -> AsyncIterator[Any]:
        """
        Start a subscription.

        Returns:
            Async iterator of subscription items (caller serializes and
            closes it; items may expose ``unsubscribe()``)
        """
        procedure = self.get(path)
        if procedure.kind is not OperationKind.SUBSCRIPTION:
            raise OperationKindError(
                f"{procedure.kind.value.capitalize()} \"{path}\" is not a subscription", path=path
            )

        stream = procedure.handler(procedure.parse_input(raw_input))
        if inspect.isawaitable(stream):
            stream = await stream
        return stream
