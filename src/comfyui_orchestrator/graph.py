"""
Workflow Graph

Typed view of a ComfyUI API-format workflow: node id -> Node, where inputs
are scalars or Refs to another node's output slot. Provides node lookup,
the excise primitives used to drop optional stages, and integrity checks.
"""

import copy
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Tuple

from .errors import AmbiguousNodeError, GraphIntegrityError


class Ref(NamedTuple):
    """Reference to output `slot` of node `node_id`."""

    node_id: str
    slot: int


# Input that carries the value through, per output slot, for nodes that can be
# excised without touching the rest of the graph.
PASSTHROUGH_SLOTS: Dict[str, Dict[int, str]] = {
    "LoraLoader": {0: "model", 1: "clip"},
    "LoraLoaderModelOnly": {0: "model"},
    "NunchakuFluxLoraLoader": {0: "model"},
    "FastFilmGrain": {0: "images"},
    "FluxGuidance": {0: "conditioning"},
    "ModelSamplingSD3": {0: "model"},
    "ModelSamplingFlux": {0: "model"},
    "PathchSageAttentionKJ": {0: "model"},
}


def _is_ref(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) == 2
        and isinstance(value[0], str)
        and isinstance(value[1], int)
        and not isinstance(value[1], bool)
    )


@dataclass
class Node:
    class_type: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    title: str = ""

    def refs(self) -> Iterator[Tuple[str, Ref]]:
        for name, value in self.inputs.items():
            if isinstance(value, Ref):
                yield name, value


class WorkflowGraph:
    """Ordered mapping of node id to Node."""

    def __init__(self, nodes: Optional[Dict[str, Node]] = None):
        self.nodes: Dict[str, Node] = dict(nodes or {})

    # -------------------------------------------------------------------------
    # Wire format
    # -------------------------------------------------------------------------

    @classmethod
    def from_api(cls, workflow: Dict[str, Any]) -> "WorkflowGraph":
        """Parse an API-format workflow. Keys starting with '_' are metadata and skipped."""
        nodes = {}
        for node_id, data in workflow.items():
            if node_id.startswith("_"):
                continue
            if not isinstance(data, dict) or "class_type" not in data:
                raise GraphIntegrityError(f"Node {node_id} has no class_type", role=node_id)
            inputs = {}
            for name, value in data.get("inputs", {}).items():
                inputs[name] = Ref(str(value[0]), value[1]) if _is_ref(value) else value
            title = data.get("_meta", {}).get("title") or data.get("title") or ""
            nodes[str(node_id)] = Node(data["class_type"], inputs, title)
        return cls(nodes)

    def to_api(self) -> Dict[str, Any]:
        """Serialize to the dict the /prompt endpoint expects."""
        workflow = {}
        for node_id, node in self.nodes.items():
            inputs = {
                name: [value.node_id, value.slot] if isinstance(value, Ref) else copy.deepcopy(value)
                for name, value in node.inputs.items()
            }
            entry: Dict[str, Any] = {"inputs": inputs, "class_type": node.class_type}
            if node.title:
                entry["_meta"] = {"title": node.title}
            workflow[node_id] = entry
        return workflow

    def copy(self) -> "WorkflowGraph":
        return WorkflowGraph(copy.deepcopy(self.nodes))

    # -------------------------------------------------------------------------
    # Mapping helpers
    # -------------------------------------------------------------------------

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __getitem__(self, node_id: str) -> Node:
        return self.nodes[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def add(self, node_id: str, node: Node) -> None:
        self.nodes[node_id] = node

    def class_types(self) -> List[str]:
        return [node.class_type for node in self.nodes.values()]

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def find(self, identifier: str) -> str:
        """
        Resolve a node id by exact key, class-type prefix, then title substring.

        The first mode that matches anything decides. Class and title matching
        are case-insensitive. More than one match inside the deciding mode is
        an AmbiguousNodeError rather than a silent first-wins pick.

        Raises:
            GraphIntegrityError: Nothing matches.
            AmbiguousNodeError: The deciding mode matches several nodes.
        """
        if identifier in self.nodes:
            return identifier

        needle = identifier.lower()
        for mode, matches in (
            ("class_type", [k for k, n in self.nodes.items() if n.class_type.lower().startswith(needle)]),
            ("title", [k for k, n in self.nodes.items() if needle in n.title.lower()]),
        ):
            if len(matches) == 1:
                return matches[0]
            if matches:
                raise AmbiguousNodeError(identifier, matches, mode)

        raise GraphIntegrityError(f"No node matches '{identifier}'", role=identifier)

    def consumers(self, node_id: str) -> List[Tuple[str, str, Ref]]:
        """All (consumer id, input name, ref) triples that point at node_id."""
        found = []
        for consumer_id, node in self.nodes.items():
            for name, ref in node.refs():
                if ref.node_id == node_id:
                    found.append((consumer_id, name, ref))
        return found

    # -------------------------------------------------------------------------
    # Transformations
    # -------------------------------------------------------------------------

    def excise(self, node_id: str, passthrough: Optional[Dict[int, str]] = None) -> Dict[str, Ref]:
        """
        Remove a pass-through node and rewire its consumers to its predecessor.

        Each consumer reading output slot N is re-pointed at whatever feeds the
        node's passthrough input for slot N (e.g. a LoraLoader's slot 1 goes
        back to its `clip` input).

        Returns:
            Mapping "consumer.input" -> new Ref, for logging.
        """
        if node_id not in self.nodes:
            raise GraphIntegrityError(f"Cannot excise missing node {node_id}", role=node_id)
        node = self.nodes[node_id]
        slots = passthrough if passthrough is not None else PASSTHROUGH_SLOTS.get(node.class_type)
        if slots is None:
            raise GraphIntegrityError(
                f"Node {node_id} ({node.class_type}) has no known pass-through inputs",
                role=node_id,
            )

        rewired = {}
        for consumer_id, name, ref in self.consumers(node_id):
            source = node.inputs.get(slots.get(ref.slot, ""))
            if not isinstance(source, Ref):
                raise GraphIntegrityError(
                    f"Node {consumer_id} reads slot {ref.slot} of {node_id}, which has no upstream to bypass to",
                    role=node_id,
                )
            self.nodes[consumer_id].inputs[name] = source
            rewired[f"{consumer_id}.{name}"] = source

        del self.nodes[node_id]
        return rewired

    def excise_stage(self, node_ids: List[str], bypass: Optional[Ref] = None) -> Dict[str, Ref]:
        """
        Remove a multi-node stage, pointing every outside reference into it at `bypass`.

        A stage with outside consumers and no bypass cannot be removed cleanly.
        """
        members = set(node_ids)
        missing = [n for n in node_ids if n not in self.nodes]
        if missing:
            raise GraphIntegrityError(f"Cannot excise missing nodes {', '.join(missing)}", role=missing[0])

        rewired = {}
        for consumer_id, node in self.nodes.items():
            if consumer_id in members:
                continue
            for name, ref in list(node.refs()):
                if ref.node_id not in members:
                    continue
                if bypass is None:
                    raise GraphIntegrityError(
                        f"Node {consumer_id} depends on stage node {ref.node_id} and no bypass was given",
                        role=ref.node_id,
                    )
                node.inputs[name] = bypass
                rewired[f"{consumer_id}.{name}"] = bypass

        for node_id in node_ids:
            del self.nodes[node_id]
        return rewired

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def integrity_errors(self) -> List[str]:
        """
        Check that every reference resolves and the graph is acyclic.

        Returns:
            List of error messages (empty if the graph is sound)
        """
        errors = []
        dependencies: Dict[str, set] = {}
        for node_id, node in self.nodes.items():
            deps = set()
            for name, ref in node.refs():
                if ref.node_id not in self.nodes:
                    errors.append(f"Node {node_id}: input '{name}' references missing node {ref.node_id}")
                elif ref.slot < 0:
                    errors.append(f"Node {node_id}: input '{name}' has negative slot {ref.slot}")
                else:
                    deps.add(ref.node_id)
            dependencies[node_id] = deps

        try:
            tuple(TopologicalSorter(dependencies).static_order())
        except CycleError as e:
            errors.append(f"Cycle through nodes {', '.join(map(str, e.args[1]))}")

        return errors

    def validate(self) -> None:
        errors = self.integrity_errors()
        if errors:
            raise GraphIntegrityError(errors[0], details={"errors": errors})
