"""
Graph Templates

Versioned workflow prototypes, one JSON file per model family, with a `_meta`
block describing how options map onto the graph:

- roles:        role name -> node lookup (key, class-type prefix or title)
- stamps:       option attribute -> [[role, input], ...]
- models:       model slot -> [role, input]
- stages:       optional LoRA adapters and toggled sub-graphs
- image_inputs: LoadImage nodes fed by uploaded assets
- parameters/defaults: {{PLACEHOLDER}} names and their default values

Roles are resolved against the graph once, when the template is registered,
so lookup failures surface at load time rather than during a batch.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import GraphIntegrityError, TemplateNotFoundError
from ..graph import WorkflowGraph
from ..mcp_utils import log_structured
from ..types import TemplateSummary

TEMPLATES_DIR = Path(__file__).parent

FAMILY_ALIASES = {
    "sd1.5": "sd15",
    "wan2.2": "wan22",
    "nunchaku-kontext-flux": "nunchaku_kontext",
    "nunchaku-flux-image": "nunchaku_flux_image",
    "flux-krea": "flux_krea",
    "wan2.2-i2v": "wan22_i2v",
}

STAGE_KINDS = ("lora", "toggle")
RESOLUTION_MODES = ("aspect", "orientation")


@dataclass(frozen=True)
class StageSpec:
    name: str
    kind: str
    nodes: Tuple[str, ...]
    enabled: bool = False
    option: Optional[str] = None
    bypass: Optional[Tuple[str, int]] = None


@dataclass(frozen=True)
class ImageInput:
    name: str
    role: str
    input: str = "image"
    required: bool = False
    toggle: Optional[str] = None
    fallback: Optional[str] = None


@dataclass(frozen=True)
class GraphTemplate:
    """
    Immutable prototype for one model family.

    `graph` is private to the template: `instantiate()` is the only way to get
    a mutable graph, and it always returns a deep copy.
    """

    family: str
    version: str
    description: str
    kind: str
    long_running: bool
    roles: Dict[str, str]
    stamps: Dict[str, Tuple[Tuple[str, str], ...]]
    models: Dict[str, Tuple[str, str]]
    seed_roles: Tuple[str, ...]
    stages: Tuple[StageSpec, ...]
    image_inputs: Dict[str, ImageInput]
    resolution: Dict[str, Any]
    gguf_switch: Dict[str, Any]
    parameters: Tuple[str, ...]
    defaults: Dict[str, Any]
    graph: WorkflowGraph = field(repr=False, compare=False)

    def instantiate(self) -> WorkflowGraph:
        return self.graph.copy()

    def node_id(self, role: str) -> str:
        try:
            return self.roles[role]
        except KeyError:
            raise GraphIntegrityError(f"Template {self.family} has no role '{role}'", role=role)

    def summary(self) -> TemplateSummary:
        return {
            "family": self.family,
            "version": self.version,
            "description": self.description,
            "kind": self.kind,
            "long_running": self.long_running,
            "stages": [s.name for s in self.stages],
            "models": sorted(self.models),
            "image_inputs": sorted(self.image_inputs),
            "parameters": list(self.parameters),
        }


def validate_template(template: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    """
    Validate template structure.

    Args:
        template: Template dict as loaded from JSON

    Returns:
        Tuple of (errors, warnings)
    """
    errors = []
    warnings = []

    if "_meta" not in template:
        errors.append("Missing _meta section")
        return errors, warnings

    meta = template["_meta"]
    for key in ("family", "version", "description", "roles"):
        if key not in meta:
            errors.append(f"Missing _meta.{key}")

    roles = meta.get("roles", {})
    if not isinstance(roles, dict):
        errors.append("_meta.roles must be a dict")
        roles = {}

    def _check_role(role: str, where: str):
        if role not in roles:
            errors.append(f"{where} references unknown role '{role}'")

    for option, targets in meta.get("stamps", {}).items():
        for target in targets:
            _check_role(target[0], f"_meta.stamps.{option}")
    for slot, target in meta.get("models", {}).items():
        _check_role(target[0], f"_meta.models.{slot}")
    for role in meta.get("seed_roles", []):
        _check_role(role, "_meta.seed_roles")

    for stage in meta.get("stages", []):
        name = stage.get("name", "?")
        if stage.get("kind") not in STAGE_KINDS:
            errors.append(f"Stage '{name}' has unknown kind {stage.get('kind')!r}")
        if stage.get("kind") == "toggle" and not stage.get("option"):
            errors.append(f"Toggle stage '{name}' needs an option")
        if not stage.get("nodes"):
            errors.append(f"Stage '{name}' lists no nodes")
        for role in stage.get("nodes", []):
            _check_role(role, f"Stage '{name}'")

    image_inputs = meta.get("image_inputs", {})
    for name, spec in image_inputs.items():
        _check_role(spec.get("role", ""), f"_meta.image_inputs.{name}")
        fallback = spec.get("fallback")
        if fallback and fallback not in image_inputs:
            errors.append(f"_meta.image_inputs.{name} falls back to unknown input '{fallback}'")

    resolution = meta.get("resolution")
    if resolution:
        if resolution.get("mode") not in RESOLUTION_MODES:
            errors.append(f"_meta.resolution.mode must be one of {RESOLUTION_MODES}")
        for role in resolution.get("roles", []):
            _check_role(role, "_meta.resolution")

    switch = meta.get("gguf_switch")
    if switch and switch.get("model") not in meta.get("models", {}):
        errors.append("_meta.gguf_switch.model must name a model slot")

    # Placeholders must be declared, and declared parameters should be used
    workflow_str = json.dumps({k: v for k, v in template.items() if k != "_meta"})
    placeholders = set(re.findall(r"\{\{([A-Z0-9_]+)\}\}", workflow_str))
    declared = set(meta.get("parameters", []))
    for placeholder in sorted(placeholders - declared):
        errors.append(f"Undeclared placeholder: {{{{{placeholder}}}}}")
    for param in sorted(declared - placeholders):
        warnings.append(f"Declared parameter '{param}' not used in workflow")
    for param in sorted(declared - set(meta.get("defaults", {}))):
        warnings.append(f"Parameter '{param}' has no default")

    return errors, warnings


def register_template(data: Dict[str, Any]) -> GraphTemplate:
    """
    Build a GraphTemplate from its JSON form, resolving every role once.

    Raises:
        GraphIntegrityError: Structural errors, unresolvable or ambiguous roles,
            or a graph with dangling references.
    """
    errors, warnings = validate_template(data)
    family = data.get("_meta", {}).get("family", "?")
    if errors:
        raise GraphIntegrityError(
            f"Template {family} is invalid: {errors[0]}",
            details={"errors": errors, "warnings": warnings},
        )

    meta = data["_meta"]
    graph = WorkflowGraph.from_api(data)
    graph.validate()
    roles = {role: graph.find(identifier) for role, identifier in meta["roles"].items()}

    template = GraphTemplate(
        family=meta["family"],
        version=meta["version"],
        description=meta["description"],
        kind=meta.get("kind", "image"),
        long_running=bool(meta.get("long_running", False)),
        roles=roles,
        stamps={k: tuple(tuple(t) for t in v) for k, v in meta.get("stamps", {}).items()},
        models={k: tuple(v) for k, v in meta.get("models", {}).items()},
        seed_roles=tuple(meta.get("seed_roles", [])),
        stages=tuple(
            StageSpec(
                name=s["name"],
                kind=s["kind"],
                nodes=tuple(s["nodes"]),
                enabled=bool(s.get("enabled", False)),
                option=s.get("option"),
                bypass=tuple(s["bypass"]) if s.get("bypass") else None,
            )
            for s in meta.get("stages", [])
        ),
        image_inputs={name: ImageInput(name=name, **spec) for name, spec in meta.get("image_inputs", {}).items()},
        resolution=dict(meta.get("resolution") or {}),
        gguf_switch=dict(meta.get("gguf_switch") or {}),
        parameters=tuple(meta.get("parameters", [])),
        defaults=dict(meta.get("defaults", {})),
        graph=graph,
    )

    log_structured(
        "debug",
        "template_registered",
        family=template.family,
        version=template.version,
        nodes=len(graph),
        warnings=warnings,
    )
    return template


_registry: Dict[str, GraphTemplate] = {}


def _load_registry() -> Dict[str, GraphTemplate]:
    if not _registry:
        for path in sorted(TEMPLATES_DIR.glob("*.json")):
            template = register_template(json.loads(path.read_text()))
            _registry[template.family] = template
    return _registry


def normalize_family(family: str) -> str:
    key = family.strip().lower()
    return FAMILY_ALIASES.get(key, key.replace("-", "_"))


def get_template(family: str) -> GraphTemplate:
    """Look up the registered template for a model family (aliases accepted)."""
    registry = _load_registry()
    key = normalize_family(family)
    if key not in registry:
        raise TemplateNotFoundError(family, sorted(registry))
    return registry[key]


def list_templates(kind: Optional[str] = None) -> List[TemplateSummary]:
    """Summaries of every registered template, optionally filtered by kind ('image' or 'video')."""
    return [
        t.summary()
        for t in _load_registry().values()
        if kind is None or t.kind == kind
    ]
