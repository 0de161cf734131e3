"""Immutable execution context passed to every node."""

from typing import Any, Dict, Iterable, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field


class ExecutionContext(BaseModel):
    """Variables of an execution plus the outputs of the nodes it visited.

    Instances are never changed in place; every update returns a new
    context, so a snapshot handed to a node stays stable while it runs.
    """
    model_config = ConfigDict(frozen=True)

    variables: Dict[str, Any] = Field(default_factory=dict, description="Inputs and accumulated variables")
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Node outputs keyed by node id")
    last_node_id: Optional[str] = Field(None, description="Node whose output is exposed as previousOutput")
    system: Dict[str, Any] = Field(
        default_factory=dict,
        description="Read-only execution facts such as executionId, shadowing variables of the same name"
    )

    def with_variables(
        self,
        updates: Optional[Mapping[str, Any]] = None,
        removals: Iterable[str] = ()
    ) -> 'ExecutionContext':
        variables = dict(self.variables)
        variables.update(updates or {})
        for key in removals:
            variables.pop(key, None)
        return self.model_copy(update={"variables": variables})

    def with_output(self, node_id: str, output: Any) -> 'ExecutionContext':
        outputs = dict(self.outputs)
        outputs[node_id] = output
        return self.model_copy(update={"outputs": outputs, "last_node_id": node_id})

    def output_of(self, node_id: str) -> Any:
        return self.outputs.get(node_id)

    def view(self) -> Dict[str, Any]:
        """Flatten into the mapping seen by template resolution.

        Node outputs appear as ``{node_id: {"output": ...}}`` so templates can
        reference ``{{node_id.output.field}}``.
        """
        data = dict(self.variables)
        for node_id, output in self.outputs.items():
            data[node_id] = {"output": output}
        if self.last_node_id is not None and self.last_node_id in self.outputs:
            data["previousOutput"] = self.outputs[self.last_node_id]
        data.update(self.system)
        return data
