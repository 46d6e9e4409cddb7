"""actiongraph - audited, undoable writes for a graph datastore."""

from actiongraph.graph import (
    SYSTEM_VNID,
    ActionRegistry,
    ApplyResult,
    Cardinality,
    Graph,
    MemoryGraphStore,
    RelationshipDeclaration,
    SchemaRegistry,
    SqliteGraphStore,
    VNodeProperties,
    VNodeType,
)

__version__ = "0.1.0"

__all__ = [
    "SYSTEM_VNID",
    "ActionRegistry",
    "ApplyResult",
    "Cardinality",
    "Graph",
    "MemoryGraphStore",
    "RelationshipDeclaration",
    "SchemaRegistry",
    "SqliteGraphStore",
    "VNodeProperties",
    "VNodeType",
    "__version__",
]
