"""Workflow definition models and structural validation."""

import re
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .nodes import NODE_CONFIG_MODELS, NodeConfig, NodeType
from ..core.exceptions import ConfigurationError


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Kind of node")
    name: Optional[str] = Field(None, description="Human readable label")
    config: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("config", "data"),
        description="Type specific configuration"
    )

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")

        if not re.match(r'^[a-zA-Z0-9_.-]+$', id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, dots, underscores, and hyphens")

        return id_value.strip()

    def parsed_config(self) -> NodeConfig:
        """Return the typed configuration for this node's type.

        Raises:
            ConfigurationError: If the configuration does not match the node type
        """
        model = NODE_CONFIG_MODELS[self.type]
        try:
            return model.model_validate(self.config)
        except ValidationError as e:
            messages = [
                f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
                for error in e.errors()
            ]
            raise ConfigurationError(
                f"Invalid configuration for {self.type.value} node '{self.id}': {'; '.join(messages)}",
                node_id=self.id,
                validation_errors=messages
            )


class EdgeConditionType(str, Enum):
    """Declarative edge condition kinds."""
    OUTPUT_CONTAINS = "output_contains"
    OUTPUT_EQUALS = "output_equals"
    SUCCESS = "success"
    FAILURE = "failure"
    PATH = "path"
    DECISION = "decision"


class EdgeCondition(BaseModel):
    """Declarative condition attached to an edge."""
    type: EdgeConditionType
    value: Optional[Any] = None


class EdgeDefinition(BaseModel):
    """Definition of an edge between workflow nodes."""
    id: Optional[str] = Field(None, description="Optional edge identifier")
    source: str = Field(..., validation_alias=AliasChoices("source", "from_node", "from"))
    target: str = Field(..., validation_alias=AliasChoices("target", "to_node", "to"))
    condition: Optional[Union[EdgeCondition, str]] = Field(None, description="Condition for edge traversal")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('condition')
    @classmethod
    def blank_condition_is_none(cls, condition):
        if isinstance(condition, str) and not condition.strip():
            return None
        return condition


class RetryPolicy(BaseModel):
    """Node retry policy applied to collaborator failures."""
    model_config = ConfigDict(populate_by_name=True)

    max_retries: int = Field(0, validation_alias=AliasChoices("max_retries", "maxRetries"))
    base_delay: Optional[float] = Field(None, validation_alias=AliasChoices("base_delay", "baseDelay", "retryDelay"))
    max_delay: Optional[float] = Field(None, validation_alias=AliasChoices("max_delay", "maxDelay"))
    exponential_base: float = Field(2.0, validation_alias=AliasChoices("exponential_base", "exponentialBase"))
    jitter: bool = True


class WorkflowConfig(BaseModel):
    """Top-level execution settings of a workflow."""
    model_config = ConfigDict(populate_by_name=True)

    entry_point: Optional[str] = Field(None, validation_alias=AliasChoices("entry_point", "entryPoint"))
    max_retries: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
        description="Execution-level retries after failure; defaults to the engine setting"
    )
    retry_policy: RetryPolicy = Field(
        default_factory=RetryPolicy,
        validation_alias=AliasChoices("retry_policy", "retryPolicy")
    )
    node_timeout: Optional[float] = Field(None, validation_alias=AliasChoices("node_timeout", "nodeTimeout"))
    human_review_timeout_hours: Optional[float] = Field(
        None,
        validation_alias=AliasChoices("human_review_timeout_hours", "humanReviewTimeoutHours")
    )
    fan_out: bool = Field(False, validation_alias=AliasChoices("fan_out", "fanOut"))
    max_node_visits: Optional[int] = Field(None, validation_alias=AliasChoices("max_node_visits", "maxNodeVisits"))


class WorkflowDefinition(BaseModel):
    """Complete definition of a workflow graph."""
    id: str = Field(default_factory=lambda: f"wf_{uuid.uuid4().hex[:12]}", description="Workflow identifier")
    name: str = Field("", description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    nodes: List[NodeDefinition] = Field(default_factory=list, description="List of nodes in the graph")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="List of edges connecting nodes")
    config: WorkflowConfig = Field(default_factory=WorkflowConfig, description="Execution settings")

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        """Outgoing edges of a node in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def entry_node_id(self) -> Optional[str]:
        """Resolve the node execution starts at.

        An explicit ``entry_point`` wins, then the first ``start`` node, then
        the first node without incoming edges.
        """
        if self.config.entry_point:
            return self.config.entry_point

        for node in self.nodes:
            if node.type == NodeType.START:
                return node.id

        targets = {edge.target for edge in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node.id
        return None

    def validate_structure(self) -> ValidationResult:
        """Perform comprehensive workflow validation and return detailed results."""
        errors = []
        warnings = []

        if not self.nodes:
            errors.append("Workflow must contain at least one node")
            return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

        node_ids = [node.id for node in self.nodes]
        duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
        if duplicates:
            errors.append(f"Duplicate node IDs: {', '.join(duplicates)}")

        known = set(node_ids)
        for edge in self.edges:
            if edge.source not in known:
                errors.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in known:
                errors.append(f"Edge references non-existent target node: {edge.target}")

        entry = self.entry_node_id()
        if entry is None:
            errors.append("Workflow has no entry point")
        elif entry not in known:
            errors.append(f"Entry point '{entry}' does not exist in nodes")

        for node in self.nodes:
            try:
                node.parsed_config()
            except ConfigurationError as e:
                errors.append(e.message)

        start_nodes = [node.id for node in self.nodes if node.type == NodeType.START]
        end_nodes = [node.id for node in self.nodes if node.type == NodeType.END]
        if len(start_nodes) > 1:
            warnings.append(f"Multiple start nodes found: {', '.join(start_nodes)}")
        if not end_nodes:
            warnings.append("Workflow has no end node")

        for node in self.nodes:
            if node.type != NodeType.END and not self.outgoing_edges(node.id):
                warnings.append(f"Node '{node.id}' has no outgoing edges")

        if entry in known:
            unreachable = known - self._find_reachable_nodes(entry)
            if unreachable:
                warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")

        if self._has_cycles():
            warnings.append("Workflow contains cycles; the node visit limit bounds them")

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )

    def _adjacency(self) -> Dict[str, List[str]]:
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)
        return graph

    def _find_reachable_nodes(self, entry_point: str) -> Set[str]:
        """Find all nodes reachable from the entry point."""
        graph = self._adjacency()
        reachable = {entry_point}
        queue = [entry_point]
        while queue:
            current = queue.pop(0)
            for neighbor in graph.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable

    def _has_cycles(self) -> bool:
        """Check if the graph contains cycles using DFS."""
        if not self.edges:
            return False

        graph = self._adjacency()
        visited = set()
        rec_stack = set()

        def has_cycle_util(node):
            visited.add(node)
            rec_stack.add(node)

            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True

            rec_stack.remove(node)
            return False

        for node in self.nodes:
            if node.id not in visited:
                if has_cycle_util(node.id):
                    return True

        return False
