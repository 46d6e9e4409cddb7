"""Action kinds and the registry that dispatches on them.

Each Action kind is an ActionDefinition: a type tag, a pydantic input model,
an ``apply`` procedure and an optional ``invert``. Kinds are collected in an
explicit ActionRegistry that is built once and passed to the runner.

Usage::

    actions = ActionRegistry()

    class RenameInput(BaseModel):
        key: str
        name: str

    @actions.action("RenameThing", RenameInput)
    def rename_thing(tx, actor_id, data):
        node = tx.get_vnode(data.key)
        tx.set_props(node.id, {"name": data.name})
        return ApplyResult(modified_nodes=[node.id])

    graph.run_as(user_id, rename_thing(key="thing-1", name="New name"))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel

from actiongraph.graph.errors import InvalidActionTypeError, PublicValidationError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from actiongraph.graph.transaction import WriteTransaction

    ApplyFn = Callable[[WriteTransaction, str, Any], "ApplyResult"]
    InvertFn = Callable[[Any, dict[str, Any]], "ActionRequest | None"]


@dataclass
class ApplyResult:
    """What an ``apply`` procedure returns.

    Attributes:
        result_data: Data handed back to the caller (and to ``invert``).
        modified_nodes: VNIDs of every entity created, changed, soft-deleted
            or given/stripped of a relationship by the Action.
    """

    result_data: dict[str, Any] = field(default_factory=dict)
    modified_nodes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ActionRequest:
    """A validated request to run one Action of a given kind."""

    type: str
    data: BaseModel

    def to_json(self) -> str:
        """Serialized input, as stored on the Action entity."""
        return self.data.model_dump_json()


@dataclass
class ActionDefinition:
    """One Action kind.

    Calling the definition with keyword arguments builds an ActionRequest,
    raising PublicValidationError if they do not fit ``input_model``.
    """

    type: str
    input_model: type[BaseModel]
    apply: ApplyFn
    invert: InvertFn | None = None

    def __call__(self, **kwargs: Any) -> ActionRequest:
        try:
            data = self.input_model(**kwargs)
        except pydantic.ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
                for err in e.errors()
            )
            raise PublicValidationError(f"Invalid {self.type} input: {problems}") from e
        return ActionRequest(type=self.type, data=data)


class ActionRegistry:
    """Tagged-variant catalog of Action kinds, keyed by type."""

    def __init__(self) -> None:
        self._definitions: dict[str, ActionDefinition] = {}

    def register(self, definition: ActionDefinition) -> ActionDefinition:
        """Add an Action kind.

        Raises:
            ValueError: If a kind with the same type is already registered.
        """
        if definition.type in self._definitions:
            msg = f"Duplicate action type {definition.type!r}"
            raise ValueError(msg)
        self._definitions[definition.type] = definition
        return definition

    def action(
        self,
        action_type: str,
        input_model: type[BaseModel],
        *,
        invert: InvertFn | None = None,
    ) -> Callable[[ApplyFn], ActionDefinition]:
        """Decorator registering an ``apply`` function as an Action kind."""

        def decorator(fn: ApplyFn) -> ActionDefinition:
            return self.register(ActionDefinition(action_type, input_model, fn, invert))

        return decorator

    def get(self, action_type: str) -> ActionDefinition:
        """Look up an Action kind.

        Raises:
            InvalidActionTypeError: If no such kind is registered.
        """
        try:
            return self._definitions[action_type]
        except KeyError:
            raise InvalidActionTypeError(action_type) from None

    def inverse_of(
        self, request: ActionRequest, result_data: dict[str, Any]
    ) -> ActionRequest | None:
        """The custom inverse of a completed request, or None if its kind has none."""
        definition = self.get(request.type)
        if definition.invert is None:
            return None
        return definition.invert(request.data, result_data)

    @property
    def action_types(self) -> list[str]:
        """All registered types (insertion order)."""
        return list(self._definitions)

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._definitions

    def __iter__(self) -> Iterator[ActionDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)
