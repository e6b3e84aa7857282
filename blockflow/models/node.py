"""Workflow graph runtime models.

Nodes, edges and per-node results are plain dataclasses; they are not
persisted on their own but travel inside stored graphs, execution requests
and queued jobs.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BlockCategory(str, Enum):
    """Closed set of block categories."""

    TRIGGER = "Trigger"
    CONDITION = "Condition"
    ACTION = "Action"

    @classmethod
    def parse(cls, value: Any) -> "BlockCategory":
        """Accept the canonical names plus the editor's plural forms."""
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower().rstrip("s")
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"Unknown block category: {value!r}")


class ConfigFieldType(str, Enum):
    """Supported types for block configuration fields."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    ARRAY = "array"
    SECRET = "secret"


@dataclass
class ConfigField:
    """Definition of one block configuration field."""

    name: str
    type: ConfigFieldType = ConfigFieldType.STRING
    description: str = ""
    required: bool = False
    default: Any = None
    options: list[str] | None = None


@dataclass
class BlockDefinition:
    """Catalog metadata for a block.

    Loaded from block implementations, never stored in the database.
    """

    label: str  # Unique dispatch key, e.g. 'db.find'
    display_name: str
    description: str
    category: BlockCategory
    config: list[ConfigField] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "label": self.label,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category.value,
            "config": [
                {
                    "name": f.name,
                    "type": f.type.value,
                    "description": f.description,
                    "required": f.required,
                    "default": f.default,
                    "options": f.options,
                }
                for f in self.config
            ],
            "outputs": self.outputs,
            "tags": self.tags,
        }


@dataclass(frozen=True)
class WorkflowNode:
    """A configured block in a workflow graph. Immutable during a run."""

    id: str
    label: str
    category: BlockCategory
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "category": self.category.value,
            "config": dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowNode":
        """Create from either the canonical or the editor node shape.

        Canonical: ``{id, label, category, config}``.
        Editor: ``{id, data: {label, category, ...config}}``.
        """
        if "data" in data and isinstance(data["data"], dict) and "label" not in data:
            payload = dict(data["data"])
            label = payload.pop("label", None)
            category = payload.pop("category", None)
            config = payload
        else:
            label = data.get("label")
            category = data.get("category")
            config = dict(data.get("config") or {})

        if not data.get("id"):
            raise ValueError("Node id is required")
        if not label:
            raise ValueError(f"Node {data['id']} has no label")

        return cls(
            id=str(data["id"]),
            label=str(label),
            category=BlockCategory.parse(category),
            config=config,
        )


BRANCH_ALIASES = {
    "true": "true",
    "yes": "true",
    "false": "false",
    "no": "false",
}


@dataclass(frozen=True)
class WorkflowEdge:
    """Directed edge; ``branch`` selects it from a condition's outcome."""

    source: str
    target: str
    branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"source": self.source, "target": self.target}
        if self.branch is not None:
            data["branch"] = self.branch
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowEdge":
        """Create from a dictionary.

        ``branch`` wins over ``sourceHandle``; ``yes``/``no`` handles map to
        ``true``/``false``, other handles (switch case labels) are kept, and
        the generic ``next``/``output`` handles mean no branch.
        """
        branch = data.get("branch")
        if branch is None:
            handle = data.get("sourceHandle")
            if handle not in (None, "", "next", "output"):
                branch = handle
        if isinstance(branch, bool):
            branch = "true" if branch else "false"
        if branch is not None:
            branch = str(branch)
            branch = BRANCH_ALIASES.get(branch.lower(), branch)
        return cls(source=str(data["source"]), target=str(data["target"]), branch=branch)


@dataclass(frozen=True)
class NodeResult:
    """Recorded outcome of one node visit. Never mutated after creation."""

    node_id: str
    result: dict[str, Any]

    @property
    def success(self) -> bool:
        return bool(self.result.get("success"))

    def to_dict(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "result": dict(self.result)}
