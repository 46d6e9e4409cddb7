"""Graph package - audited, undoable graph storage.

Every write is wrapped in an Action that records exactly what it changed,
so any past Action can be reversed (and the reversal reversed again).
"""

from actiongraph.graph.actions import (
    ActionDefinition,
    ActionRegistry,
    ActionRequest,
    ApplyResult,
)
from actiongraph.graph.audit import action_summary, list_actions
from actiongraph.graph.changes import ActionChanges, get_action_changes
from actiongraph.graph.errors import (
    ConstraintViolationError,
    GraphError,
    IntegrityError,
    InvalidActionTypeError,
    MigrationError,
    NodeNotFoundError,
    PublicValidationError,
    RelationshipPropertyEditError,
    SchemaError,
    UndeclaredModificationError,
    UndoConflictError,
    UndoConflictReason,
    ValidationError,
)
from actiongraph.graph.graph import Graph
from actiongraph.graph.helpers import (
    define_create_action,
    define_delete_action,
    update_to_many_relationship,
    update_to_one_relationship,
)
from actiongraph.graph.ids import SYSTEM_VNID, new_vnid
from actiongraph.graph.migrations import Migration, MigrationContext, MigrationManager
from actiongraph.graph.query import ActionRecord, Related, get_action, pull, pull_one
from actiongraph.graph.runner import ActionResult, ActionRunner
from actiongraph.graph.schema import (
    Action,
    Cardinality,
    RelationshipDeclaration,
    SchemaRegistry,
    SlugIdField,
    User,
    VNodeProperties,
    VNodeType,
)
from actiongraph.graph.sqlite_store import SqliteGraphStore
from actiongraph.graph.store import GraphStore, MemoryGraphStore, NodeRecord, RelRecord
from actiongraph.graph.transaction import ReadTransaction, WriteTransaction
from actiongraph.graph.undo import UndoAction

__all__ = [
    "SYSTEM_VNID",
    "Action",
    "ActionChanges",
    "ActionDefinition",
    "ActionRecord",
    "ActionRegistry",
    "ActionRequest",
    "ActionResult",
    "ActionRunner",
    "ApplyResult",
    "Cardinality",
    "ConstraintViolationError",
    "Graph",
    "GraphError",
    "GraphStore",
    "IntegrityError",
    "InvalidActionTypeError",
    "MemoryGraphStore",
    "Migration",
    "MigrationContext",
    "MigrationError",
    "MigrationManager",
    "NodeNotFoundError",
    "NodeRecord",
    "PublicValidationError",
    "ReadTransaction",
    "RelRecord",
    "Related",
    "RelationshipDeclaration",
    "RelationshipPropertyEditError",
    "SchemaError",
    "SchemaRegistry",
    "SlugIdField",
    "SqliteGraphStore",
    "UndeclaredModificationError",
    "UndoAction",
    "UndoConflictError",
    "UndoConflictReason",
    "User",
    "VNodeProperties",
    "VNodeType",
    "ValidationError",
    "WriteTransaction",
    "action_summary",
    "define_create_action",
    "define_delete_action",
    "get_action",
    "get_action_changes",
    "list_actions",
    "new_vnid",
    "pull",
    "pull_one",
    "update_to_many_relationship",
    "update_to_one_relationship",
]
