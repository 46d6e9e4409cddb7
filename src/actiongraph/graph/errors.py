"""Error types raised by the action graph.

Every error aborts the write transaction it was raised in; nothing here is
retried automatically. ``PublicValidationError`` is the only type whose
message is meant to be shown to end users as-is.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from difflib import get_close_matches
from enum import StrEnum


class GraphError(Exception):
    """Base class for all action graph errors."""


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


class IntegrityError(GraphError):
    """A structural invariant of the runner or change recorder was violated.

    Raised when a write transaction does not contain exactly one Action,
    when an entity is modified without being declared, or when a
    relationship's properties are edited in place.
    """


@dataclass
class UndeclaredModificationError(IntegrityError):
    """An entity was changed by an Action that did not declare it.

    Attributes:
        node_id: The entity that was modified.
        label: Most specific label of the entity.
        action_type: Kind of the Action that made the change.
        change: First change-detail key recorded for the entity.
    """

    node_id: str
    label: str
    action_type: str
    change: str

    def __post_init__(self) -> None:
        super().__init__(
            f"A :{self.label} node was modified by this {self.action_type} action "
            f"({self.change}) but not explicitly marked as modified by the Action."
        )


class RelationshipPropertyEditError(IntegrityError):
    """A relationship's properties were changed without delete-and-recreate."""

    def __init__(self, rel_type: str) -> None:
        self.rel_type = rel_type
        super().__init__(
            f"Changing properties of the {rel_type} relationship is not supported. "
            "Delete and re-create it instead."
        )


@dataclass
class ConstraintViolationError(IntegrityError):
    """A unique (label, property) constraint was violated.

    Attributes:
        constraint: Name of the violated constraint.
        label: Constrained label.
        prop: Constrained property.
        value: The duplicated value.
    """

    constraint: str
    label: str
    prop: str
    value: object

    def __post_init__(self) -> None:
        super().__init__(
            f"Node with label :{self.label} and {self.prop}={self.value!r} already exists "
            f"(constraint {self.constraint})"
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(GraphError):
    """An entity's post-mutation state violates its declared shape.

    Use PublicValidationError if the message is safe for end users to see
    (contains no internal/private data).
    """


class PublicValidationError(ValidationError):
    """A validation error that is safe to report publicly."""


# ---------------------------------------------------------------------------
# Undo
# ---------------------------------------------------------------------------


class UndoConflictReason(StrEnum):
    """Why a past Action could not be reversed."""

    ALREADY_UNDONE = "already_undone"
    PERMANENT_DELETION = "permanent_deletion"
    TARGET_MISSING = "target_missing"
    RELATIONSHIP_RECREATION = "relationship_recreation"
    STALE_PROPERTY = "stale_property"
    RELATIONSHIP_MISSING = "relationship_missing"
    MODIFIED_SINCE_CREATION = "modified_since_creation"
    ALREADY_DELETED = "already_deleted"


class UndoConflictError(GraphError):
    """The graph has diverged in a way that makes reversing an Action unsafe."""

    def __init__(self, reason: UndoConflictReason, message: str) -> None:
        self.reason = reason
        super().__init__(message)


# ---------------------------------------------------------------------------
# Lookup / definitions
# ---------------------------------------------------------------------------


@dataclass
class NodeNotFoundError(GraphError):
    """Raised when a VNID or slugId key does not match any entity.

    Attributes:
        key: The VNID or slugId that was looked up.
        available: Known slugIds, used to suggest likely typos.
        context: Description of where the lookup happened.
    """

    key: str
    available: list[str] = field(default_factory=list)
    context: str = ""

    def __post_init__(self) -> None:
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = f"Node with key '{self.key}' not found"
        if self.context:
            msg += f" ({self.context})"
        suggestions = self.suggestions()
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"
        return msg

    def suggestions(self) -> list[str]:
        """Find similar keys that might be typos."""
        return get_close_matches(self.key, self.available, n=3, cutoff=0.6)


class SchemaError(GraphError):
    """A node type or relationship declaration is invalid."""


class InvalidActionTypeError(GraphError):
    """No Action kind is registered under the requested type tag."""

    def __init__(self, action_type: str) -> None:
        self.action_type = action_type
        super().__init__(f"Action type '{action_type}' is not registered.")


class MigrationError(GraphError):
    """A migration could not be applied or reversed."""
