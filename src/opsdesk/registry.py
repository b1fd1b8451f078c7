# registry.py
# Operation descriptors, the per-request registry and the context-bound
# factory that builds it.
#
# The registry is the only place that turns model-supplied arguments into
# typed parameter models. Executors never see an untyped dict and the loop
# never sees anything but an Outcome.

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping

from pydantic import BaseModel, ValidationError

from opsdesk.config import AgentConfig
from opsdesk.models import Failure, OperationRequest, Outcome, Principal, Success
from opsdesk.notifications import Notifier
from opsdesk.store import SessionFactory


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OperationContext:
    """Everything an executor may touch. Built once per request."""

    principal: Principal
    session_factory: SessionFactory
    notifier: Notifier
    config: AgentConfig


Handler = Callable[[OperationContext, Any], Outcome]


@dataclass(frozen=True)
class OperationSpec:
    """Unbound catalog entry: the same for every request."""

    name: str
    params: type[BaseModel]
    description: str
    handler: Handler
    permission: str | None = None


@dataclass(frozen=True)
class Operation:
    """Descriptor bound to one principal. `executor` takes validated params only."""

    name: str
    params: type[BaseModel]
    description: str
    permission: str | None
    executor: Callable[[Any], Outcome]

    def tool_schema(self) -> dict[str, Any]:
        """Function-calling definition in the OpenAI tools format."""
        schema = self.params.model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def describe_validation_error(exc: ValidationError) -> str:
    """Compact field-level summary, e.g. "missing phone; email: value is not a valid email address"."""
    parts: list[str] = []
    for error in exc.errors():
        field = ".".join(str(p) for p in error["loc"]) or "parameters"
        if error["type"] == "missing":
            parts.append(f"missing {field}")
        else:
            parts.append(f"{field}: {error['msg']}")
    return "; ".join(parts)


def unknown_operation(name: str) -> Failure:
    return Failure(
        error="unknown_operation",
        message=f"Operation '{name}' does not exist. No action was taken.",
    )


def ensure_outcome(name: str, result: Any) -> Outcome:
    """Anything other than the two Outcome shapes is reported as a failure."""
    if isinstance(result, (Success, Failure)):
        return result
    return Failure(
        error="invalid_outcome",
        message=f"Operation '{name}' returned an unrecognised result; treat it as not completed.",
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class OperationRegistry(Mapping[str, Operation]):
    """
    Ordered, read-only name -> Operation mapping for a single principal.

    Instances are never shared between requests; build one per request with
    `build_registry`.
    """

    def __init__(self, principal: Principal, operations: Iterable[Operation]) -> None:
        table: dict[str, Operation] = {}
        for operation in operations:
            if operation.name in table:
                raise ValueError(f"Duplicate operation name: {operation.name!r}")
            table[operation.name] = operation
        self._principal = principal
        self._operations = MappingProxyType(table)

    def __getitem__(self, name: str) -> Operation:
        return self._operations[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def principal(self) -> Principal:
        return self._principal

    def tool_schemas(self) -> list[dict[str, Any]]:
        return [operation.tool_schema() for operation in self._operations.values()]

    def invoke(self, request: OperationRequest) -> Outcome:
        """
        Resolve, authorize, validate and execute one request.

        Business-rule failures come back as Failure. Exceptions raised by an
        executor are unexpected faults and propagate to the caller.
        """
        operation = self._operations.get(request.name)
        if operation is None:
            return unknown_operation(request.name)

        if not self._principal.can(operation.permission):
            return Failure(
                error="unauthorized",
                message=(
                    f"{self._principal.display_name} ({self._principal.role}) is not allowed "
                    f"to run '{operation.name}'."
                ),
            )

        if request.parameters is None:
            return Failure(
                error="validation_error",
                message=f"Arguments for '{operation.name}' were not a valid JSON object.",
            )

        try:
            params = operation.params.model_validate(request.parameters)
        except ValidationError as exc:
            detail = describe_validation_error(exc)
            return Failure(error=detail, message=f"Invalid parameters for '{operation.name}': {detail}")

        return ensure_outcome(operation.name, operation.executor(params))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_registry(
    principal: Principal,
    session_factory: SessionFactory,
    notifier: Notifier,
    config: AgentConfig,
    catalog: Iterable[OperationSpec] | None = None,
) -> OperationRegistry:
    """Bind every catalog entry to `principal` and return a fresh registry."""
    if catalog is None:
        from opsdesk.tools import CATALOG

        catalog = CATALOG

    context = OperationContext(
        principal=principal,
        session_factory=session_factory,
        notifier=notifier,
        config=config,
    )
    return OperationRegistry(principal, (_bind(spec, context) for spec in catalog))


def _bind(spec: OperationSpec, context: OperationContext) -> Operation:
    def executor(params: Any) -> Outcome:
        return spec.handler(context, params)

    return Operation(
        name=spec.name,
        params=spec.params,
        description=spec.description,
        permission=spec.permission,
        executor=executor,
    )

