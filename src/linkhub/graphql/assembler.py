"""
Schema assembly: SDL type definitions plus a resolver map become one
executable Strawberry schema.

The SDL is the contract. It is parsed and validated with graphql-core, the
resolver map is checked against it, then Strawberry classes are generated
from the declared types with the resolvers attached. Finally the schema
Strawberry built is diffed against the declared one, which catches resolvers
whose arguments disagree with the SDL.
"""

import functools
import inspect
from collections.abc import Mapping
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

import strawberry
from graphql import (
    GraphQLError,
    GraphQLList,
    GraphQLNonNull,
    GraphQLObjectType,
    GraphQLScalarType,
    GraphQLSchema,
    OperationDefinitionNode,
    build_ast_schema,
    build_schema,
    find_breaking_changes,
    find_dangerous_changes,
    get_operation_ast,
    parse,
    validate,
    validate_schema,
)
from strawberry.extensions import SchemaExtension
from strawberry.schema.config import StrawberryConfig
from strawberry.types import ExecutionResult

from linkhub.core.exceptions import SchemaValidationError
from linkhub.core.logging import get_logger
from linkhub.graphql.extensions import ResolverTimeout

logger = get_logger(__name__)

ResolverMap = Mapping[str, Mapping[str, Callable[..., Any]]]

SCALAR_TYPES: Dict[str, Any] = {
    "String": str,
    "Int": int,
    "Float": float,
    "Boolean": bool,
    "ID": strawberry.ID,
}


def resolve_record_field(root: Any, field_name: str) -> Any:
    """Default resolver: read mappings by key and anything else by attribute."""
    if isinstance(root, Mapping):
        return root.get(field_name)
    return getattr(root, field_name, None)


class ExecutableSchema:
    """
    The validated combination of type definitions and resolvers.

    Wraps one ``strawberry.Schema``; both gateways execute through it.
    """

    def __init__(self, declared: GraphQLSchema, schema: strawberry.Schema):
        self.declared = declared
        self.strawberry_schema = schema

    @property
    def sdl(self) -> str:
        return self.strawberry_schema.as_str()

    def export(self, path: Union[str, Path]) -> Path:
        """Write the SDL to ``path`` for external tooling and return the path."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.sdl + "\n", encoding="utf-8")
        logger.info("GraphQL schema exported", path=str(target))
        return target

    def validate(
        self, query: str, operation_name: Optional[str] = None
    ) -> Tuple[Optional[str], List[GraphQLError]]:
        """
        Parse and validate a document without executing it.

        Returns:
            The type of the selected operation ("query", "mutation" or
            "subscription") and an empty list, or None and the errors.
        """
        try:
            document = parse(query)
        except GraphQLError as e:
            return None, [e]

        errors = validate(self.declared, document)
        if errors:
            return None, list(errors)

        if not any(isinstance(d, OperationDefinitionNode) for d in document.definitions):
            return None, [GraphQLError("Must provide an operation.")]

        operation = get_operation_ast(document, operation_name)
        if operation is None:
            if operation_name:
                message = f"Unknown operation named '{operation_name}'."
            else:
                message = "Must provide operation name if query contains multiple operations."
            return None, [GraphQLError(message)]
        return operation.operation.value, []

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        operation_name: Optional[str] = None,
        context: Any = None,
    ) -> ExecutionResult:
        return await self.strawberry_schema.execute(
            query,
            variable_values=variables,
            context_value=context,
            operation_name=operation_name,
        )

    async def subscribe(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        operation_name: Optional[str] = None,
        context: Any = None,
    ) -> Union[AsyncIterator[ExecutionResult], ExecutionResult]:
        """
        Start a subscription.

        Returns an async iterator of results, or a single result carrying the
        errors when the subscription could not be started.
        """
        return await self.strawberry_schema.subscribe(
            query,
            variable_values=variables,
            context_value=context,
            operation_name=operation_name,
        )


def assemble(
    type_defs: str,
    resolvers: ResolverMap,
    *,
    resolver_timeout: Optional[float] = None,
    extensions: Iterable[Callable[[], SchemaExtension]] = (),
) -> ExecutableSchema:
    """
    Build an executable schema from SDL and a resolver map.

    Args:
        type_defs: GraphQL SDL with object types only
        resolvers: ``{type_name: {field_name: resolver}}``; every field of
            the root operation types needs one
        resolver_timeout: Seconds each async resolver may run, None for no bound
        extensions: Extension classes or factories; each execution gets fresh instances

    Raises:
        SchemaValidationError: With every problem found
    """
    declared = _build_declared_schema(type_defs)

    problems = _check_resolver_map(declared, resolvers)
    if problems:
        raise SchemaValidationError("Resolver map does not match the type definitions", problems)

    schema_extensions = list(extensions)
    if resolver_timeout:
        schema_extensions.append(functools.partial(ResolverTimeout, timeout=resolver_timeout))

    try:
        schema = _StrawberryTypeBuilder(declared, resolvers).build(schema_extensions)
    except SchemaValidationError:
        raise
    except Exception as e:
        raise SchemaValidationError("Could not build the schema", [str(e)]) from e

    problems = _diff_schemas(declared, schema)
    if problems:
        raise SchemaValidationError("Resolvers disagree with the type definitions", problems)

    logger.info(
        "GraphQL schema assembled",
        types=len(_object_types(declared)),
        subscriptions=len(declared.subscription_type.fields) if declared.subscription_type else 0,
    )
    return ExecutableSchema(declared, schema)


def _build_declared_schema(type_defs: str) -> GraphQLSchema:
    try:
        document = parse(type_defs)
    except GraphQLError as e:
        raise SchemaValidationError("Type definitions do not parse", [e.message]) from e

    try:
        declared = build_ast_schema(document)
    except (GraphQLError, TypeError) as e:
        # assert_valid_sdl joins its messages with blank lines
        raise SchemaValidationError(
            "Type definitions are invalid", [m for m in str(e).split("\n\n") if m]
        ) from e

    errors = validate_schema(declared)
    if errors:
        raise SchemaValidationError("Type definitions are invalid", [e.message for e in errors])

    unsupported = []
    for name, named_type in declared.type_map.items():
        if name.startswith("__"):
            continue
        if isinstance(named_type, GraphQLScalarType):
            if name not in SCALAR_TYPES:
                unsupported.append(f"Custom scalar '{name}' is not supported")
        elif not isinstance(named_type, GraphQLObjectType):
            kind = type(named_type).__name__.replace("GraphQL", "").replace("Type", "").lower()
            unsupported.append(f"Type '{name}' is {kind}, only object types are supported")
    if unsupported:
        raise SchemaValidationError("Type definitions are invalid", unsupported)
    return declared


def _root_types(schema: GraphQLSchema) -> List[GraphQLObjectType]:
    return [
        t for t in (schema.query_type, schema.mutation_type, schema.subscription_type)
        if t is not None
    ]


def _object_types(schema: GraphQLSchema) -> List[GraphQLObjectType]:
    return [
        t for name, t in schema.type_map.items()
        if isinstance(t, GraphQLObjectType) and not name.startswith("__")
    ]


def _check_resolver_map(declared: GraphQLSchema, resolvers: ResolverMap) -> List[str]:
    problems = []
    subscription_name = declared.subscription_type.name if declared.subscription_type else None

    for type_name, fields in resolvers.items():
        gql_type = declared.type_map.get(type_name)
        if not isinstance(gql_type, GraphQLObjectType) or type_name.startswith("__"):
            problems.append(f"Resolvers given for unknown type '{type_name}'")
            continue
        for field_name, resolver in fields.items():
            if field_name not in gql_type.fields:
                problems.append(f"Resolver given for unknown field '{type_name}.{field_name}'")
            elif not callable(resolver):
                problems.append(f"Resolver for '{type_name}.{field_name}' is not callable")
            elif type_name == subscription_name and not inspect.isasyncgenfunction(resolver):
                problems.append(
                    f"Resolver for '{type_name}.{field_name}' must be an async generator function"
                )

    for root in _root_types(declared):
        provided = resolvers.get(root.name, {})
        for field_name in root.fields:
            if field_name not in provided:
                problems.append(f"Root field '{root.name}.{field_name}' has no resolver")
    return problems


def _diff_schemas(declared: GraphQLSchema, schema: strawberry.Schema) -> List[str]:
    built = build_schema(schema.as_str())
    changes = (
        find_breaking_changes(declared, built)
        + find_dangerous_changes(declared, built)
        # The reverse direction catches arguments and fields made stricter
        + find_breaking_changes(built, declared)
    )
    problems = []
    for change in changes:
        if change.description not in problems:
            problems.append(change.description)
    return problems


class _StrawberryTypeBuilder:
    """Generates one Strawberry class per declared object type."""

    def __init__(self, declared: GraphQLSchema, resolvers: ResolverMap):
        self.declared = declared
        self.resolvers = resolvers
        self.classes: Dict[str, type] = {}

    def build(self, extensions: List[Callable[[], SchemaExtension]]) -> strawberry.Schema:
        object_types = _object_types(self.declared)

        # Classes exist before any annotation refers to them
        for gql_type in object_types:
            self.classes[gql_type.name] = type(
                gql_type.name, (), {"__module__": __name__, "__annotations__": {}}
            )
        for gql_type in object_types:
            self._add_fields(gql_type)
        for gql_type in object_types:
            strawberry.type(
                self.classes[gql_type.name],
                name=gql_type.name,
                description=gql_type.description,
            )

        roots = {t.name for t in _root_types(self.declared)}
        return strawberry.Schema(
            query=self._class_for(self.declared.query_type),
            mutation=self._class_for(self.declared.mutation_type),
            subscription=self._class_for(self.declared.subscription_type),
            types=[cls for name, cls in self.classes.items() if name not in roots],
            extensions=extensions,
            config=StrawberryConfig(
                auto_camel_case=False,
                default_resolver=resolve_record_field,
            ),
        )

    def _class_for(self, gql_type: Optional[GraphQLObjectType]) -> Optional[type]:
        return self.classes[gql_type.name] if gql_type is not None else None

    def _add_fields(self, gql_type: GraphQLObjectType) -> None:
        cls = self.classes[gql_type.name]
        type_resolvers = self.resolvers.get(gql_type.name, {})
        is_subscription = gql_type is self.declared.subscription_type

        for field_name, field_def in gql_type.fields.items():
            annotation = self._annotation(field_def.type)
            resolver: Optional[Callable] = type_resolvers.get(field_name)
            options = dict(
                description=field_def.description,
                deprecation_reason=field_def.deprecation_reason,
                graphql_type=annotation,
            )
            if resolver is None:
                field = strawberry.field(default=None, **options)
            else:
                field = strawberry.field(resolver=resolver, is_subscription=is_subscription, **options)
            cls.__annotations__[field_name] = annotation
            setattr(cls, field_name, field)

    def _annotation(self, gql_type: Any) -> Any:
        if isinstance(gql_type, GraphQLNonNull):
            return self._base_annotation(gql_type.of_type)
        return Optional[self._base_annotation(gql_type)]

    def _base_annotation(self, gql_type: Any) -> Any:
        if isinstance(gql_type, GraphQLList):
            return List[self._annotation(gql_type.of_type)]
        if isinstance(gql_type, GraphQLScalarType):
            return SCALAR_TYPES[gql_type.name]
        return self.classes[gql_type.name]
