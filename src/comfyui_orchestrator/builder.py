"""
Graph Builder

Turns a GraphTemplate plus GenerationOptions into a concrete WorkflowGraph:
placeholders, option stamping, model file selection, resolution, uploaded
image references, optional stage rewiring and seed stamping, in that order.
Every build starts from a fresh deep copy of the template.
"""

from typing import Any, Dict, Mapping, Optional

from .errors import GraphIntegrityError
from .graph import Ref, WorkflowGraph
from .mcp_utils import log_structured
from .options import GenerationOptions, compute_resolution, orientation_resolution
from .param_inject import inject_placeholders
from .templates import GraphTemplate

# LoRA loader inputs that carry a strength, across loader classes
STRENGTH_INPUTS = ("strength_model", "strength_clip", "lora_strength")


def _set(graph: WorkflowGraph, template: GraphTemplate, role: str, name: str, value: Any) -> None:
    node_id = template.node_id(role)
    if node_id not in graph:
        raise GraphIntegrityError(f"Role '{role}' (node {node_id}) is not in the graph", role=role)
    graph[node_id].inputs[name] = value


def _stamp_options(graph: WorkflowGraph, template: GraphTemplate, options: GenerationOptions) -> None:
    for attr, targets in template.stamps.items():
        if not hasattr(options, attr):
            raise GraphIntegrityError(f"Template {template.family} stamps unknown option '{attr}'", role=attr)
        value = getattr(options, attr)
        if value is None:
            continue
        for role, name in targets:
            _set(graph, template, role, name, value)


def _stamp_models(graph: WorkflowGraph, template: GraphTemplate, options: GenerationOptions) -> None:
    unknown = sorted(set(options.models) - set(template.models))
    if unknown:
        raise GraphIntegrityError(
            f"Template {template.family} has no model slot '{unknown[0]}'",
            role=unknown[0],
            details={"slots": sorted(template.models)},
        )
    for slot, filename in options.models.items():
        role, name = template.models[slot]
        _set(graph, template, role, name, filename)

    switch = template.gguf_switch
    filename = options.models.get(switch.get("model", ""))
    if filename:
        plain, gguf = switch["classes"]
        node = graph[template.node_id(template.models[switch["model"]][0])]
        node.class_type = gguf if filename.lower().endswith(".gguf") else plain
        node.title = node.class_type


def _stamp_resolution(graph: WorkflowGraph, template: GraphTemplate, options: GenerationOptions) -> Optional[tuple]:
    resolution = template.resolution
    if not resolution:
        return None
    if resolution["mode"] == "aspect":
        width, height = compute_resolution(options.aspect_ratio, resolution["base"])
    else:
        width, height = orientation_resolution(options.aspect_ratio, resolution["landscape"], resolution["portrait"])
    for role in resolution["roles"]:
        _set(graph, template, role, "width", width)
        _set(graph, template, role, "height", height)
    return width, height


def _stamp_images(
    graph: WorkflowGraph,
    template: GraphTemplate,
    options: GenerationOptions,
    asset_refs: Mapping[str, Any],
) -> None:
    for name, spec in template.image_inputs.items():
        active = spec.toggle is None or bool(getattr(options, spec.toggle, False))
        ref = asset_refs.get(name) if active else None
        if ref is None and spec.fallback:
            ref = asset_refs.get(spec.fallback)
        if ref is None:
            if spec.required:
                raise GraphIntegrityError(
                    f"Template {template.family} needs image input '{name}'",
                    role=spec.role,
                )
            continue
        _set(graph, template, spec.role, spec.input, ref.image_value)


def plan_stages(template: GraphTemplate, options: GenerationOptions) -> Dict[str, bool]:
    """Decide every optional stage up front, before any node is removed."""
    plan = {}
    for stage in template.stages:
        if stage.kind == "lora":
            lora = options.loras.get(stage.name)
            plan[stage.name] = lora.enabled if lora is not None else stage.enabled
        else:
            value = getattr(options, stage.option, None)
            plan[stage.name] = stage.enabled if value is None else bool(value)
    unknown = sorted(set(options.loras) - {s.name for s in template.stages if s.kind == "lora"})
    if unknown:
        raise GraphIntegrityError(
            f"Template {template.family} has no LoRA stage '{unknown[0]}'",
            role=unknown[0],
        )
    return plan


def _stamp_loras(graph: WorkflowGraph, template: GraphTemplate, options: GenerationOptions, plan: Dict[str, bool]) -> None:
    for stage in template.stages:
        lora = options.loras.get(stage.name)
        if stage.kind != "lora" or not plan[stage.name] or lora is None:
            continue
        for index, role in enumerate(stage.nodes):
            name, strength = lora.for_node(index)
            inputs = graph[template.node_id(role)].inputs
            if name:
                inputs["lora_name"] = name
            if strength is not None:
                for key in STRENGTH_INPUTS:
                    if key in inputs:
                        inputs[key] = strength


def _excise_disabled(graph: WorkflowGraph, template: GraphTemplate, plan: Dict[str, bool]) -> None:
    for stage in template.stages:
        if plan[stage.name]:
            continue
        node_ids = [template.node_id(role) for role in stage.nodes]
        if stage.kind == "lora" or (len(node_ids) == 1 and stage.bypass is None):
            for node_id in node_ids:
                rewired = graph.excise(node_id)
                log_structured("debug", "node_excised", family=template.family, stage=stage.name, node=node_id, rewired=rewired)
        else:
            bypass = Ref(template.node_id(stage.bypass[0]), stage.bypass[1]) if stage.bypass else None
            rewired = graph.excise_stage(node_ids, bypass)
            log_structured("debug", "stage_excised", family=template.family, stage=stage.name, nodes=node_ids, rewired=rewired)


def stamp_seed(graph: WorkflowGraph, template: GraphTemplate, seed: int) -> None:
    """Set the same seed on every sampler-like role still present in the graph."""
    stamped = 0
    for role in template.seed_roles:
        node_id = template.node_id(role)
        if node_id not in graph:
            continue
        inputs = graph[node_id].inputs
        inputs["noise_seed" if "noise_seed" in inputs else "seed"] = seed
        stamped += 1
    if template.seed_roles and not stamped:
        raise GraphIntegrityError(f"No seed-carrying node left in {template.family}", role=template.seed_roles[0])


def build(
    template: GraphTemplate,
    options: GenerationOptions,
    asset_refs: Optional[Mapping[str, Any]] = None,
    seed: Optional[int] = None,
) -> WorkflowGraph:
    """
    Build a concrete graph for one generation.

    Args:
        template: Registered template for the model family.
        options: Generation options (read only).
        asset_refs: Uploaded image references keyed by template image input name.
        seed: Seed to stamp on every sampler role; None leaves the template's seed.

    Returns:
        A validated WorkflowGraph ready for submission.

    Raises:
        GraphIntegrityError: A role, placeholder, model slot or required image
            could not be resolved, or rewiring left a dangling reference.
    """
    graph = template.instantiate()
    if template.parameters:
        params = {**template.defaults, **options.params}
        graph = WorkflowGraph.from_api(inject_placeholders(graph.to_api(), params))

    _stamp_options(graph, template, options)
    _stamp_models(graph, template, options)
    size = _stamp_resolution(graph, template, options)
    _stamp_images(graph, template, options, asset_refs or {})

    plan = plan_stages(template, options)
    _stamp_loras(graph, template, options, plan)
    _excise_disabled(graph, template, plan)

    if seed is not None:
        stamp_seed(graph, template, seed)

    graph.validate()

    log_structured(
        "info",
        "graph_built",
        family=template.family,
        version=template.version,
        nodes=len(graph),
        stages=plan,
        resolution=size,
        seed=seed,
    )
    return graph


def export_workflow(graph: WorkflowGraph) -> Dict[str, Any]:
    """Wrap a graph the way the /prompt endpoint and saved workflow files expect it."""
    return {"prompt": graph.to_api()}
