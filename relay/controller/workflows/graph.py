"""
Dependency graph helpers for workflow definitions.

Edges come from two places: explicit `depends_on` lists and implicit
`${outputs.<step>.<key>}` references inside a step's spec or `when` conditions.
Everything here is a pure function over the definition or a status mapping so the
scheduler can recompute its frontier after every transition.
"""
from typing import Dict, List, Optional, Set

from relay.common.errors import DefinitionError, ExpressionError
from relay.common.expressions.engine import references, referenced_steps
from relay.common.models.runs import RunStatus, StepStatus
from relay.common.models.workflows import StepDefinition, WorkflowDefinition

BLOCKING_STATUSES = {StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELED}
WAITING_STATUSES = {StepStatus.PENDING, StepStatus.RUNNABLE}

Graph = Dict[str, Set[str]]


def step_dependencies(step: StepDefinition) -> Set[str]:
    deps = set(step.depends_on)
    deps |= referenced_steps(step.spec)
    deps |= referenced_steps(step.when)
    return deps


def build_graph(definition: WorkflowDefinition) -> Graph:
    return {step.name: step_dependencies(step) for step in definition.steps}


def find_cycle(graph: Graph) -> Optional[List[str]]:
    """Returns one cycle as a list of step names (first == last), or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in graph}
    stack: List[str] = []

    def visit(name: str) -> Optional[List[str]]:
        color[name] = GREY
        stack.append(name)
        for dep in sorted(graph.get(name, ())):
            if dep not in color:
                continue
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        color[name] = BLACK
        return None

    for name in graph:
        if color[name] == WHITE:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def topological_order(graph: Graph) -> List[str]:
    """Kahn's algorithm, stable with respect to the graph's insertion order."""
    remaining = {name: set(deps) & set(graph) for name, deps in graph.items()}
    order: List[str] = []
    while remaining:
        ready = [name for name, deps in remaining.items() if not deps]
        if not ready:
            raise DefinitionError(f"Dependency cycle among steps: {sorted(remaining)}")
        for name in ready:
            order.append(name)
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order


def descendants(graph: Graph, name: str) -> Set[str]:
    found: Set[str] = set()
    frontier = [name]
    while frontier:
        current = frontier.pop()
        for child, deps in graph.items():
            if current in deps and child not in found:
                found.add(child)
                frontier.append(child)
    return found


def propagate_skips(statuses: Dict[str, StepStatus], graph: Graph) -> Dict[str, StepStatus]:
    """
    Returns a new status mapping where every waiting step with a failed, skipped or
    canceled ancestor is SKIPPED. Applying it to its own result changes nothing.
    """
    result = dict(statuses)
    for name in topological_order(graph):
        if result.get(name) not in WAITING_STATUSES:
            continue
        if any(result.get(dep) in BLOCKING_STATUSES for dep in graph[name]):
            result[name] = StepStatus.SKIPPED
    return result


def runnable_steps(statuses: Dict[str, StepStatus], graph: Graph) -> List[str]:
    return [
        name for name in topological_order(graph)
        if statuses.get(name) == StepStatus.PENDING
        and all(statuses.get(dep) == StepStatus.SUCCEEDED for dep in graph[name])
    ]


def aggregate_status(statuses: Dict[str, StepStatus], canceled: bool = False) -> RunStatus:
    # Skipped steps never count as failure on their own
    values = set(statuses.values())
    if values & {StepStatus.PENDING, StepStatus.RUNNABLE, StepStatus.RUNNING}:
        return RunStatus.CANCELED if canceled else RunStatus.RUNNING
    if StepStatus.FAILED in values:
        return RunStatus.FAILED
    if canceled or StepStatus.CANCELED in values:
        return RunStatus.CANCELED
    return RunStatus.SUCCEEDED


def _check_references(owner: str, value, definition: WorkflowDefinition, allowed: Set[str], step_names: Set[str]):
    try:
        refs = references(value)
    except ExpressionError as e:
        raise DefinitionError(f"{owner}: {e}") from e

    for namespace, path in refs:
        if namespace not in allowed:
            raise DefinitionError(f"{owner}: '{namespace}' references are not allowed here")
        if namespace == "parameters" and path[0] not in definition.parameters:
            raise DefinitionError(f"{owner}: undeclared parameter '{path[0]}'")
        if namespace == "outputs" and path[0] not in step_names:
            raise DefinitionError(f"{owner}: reference to unknown step '{path[0]}'")


def validate_definition(definition: WorkflowDefinition) -> Graph:
    """
    Rejects definitions that could never execute: duplicate names, dangling or
    self references, undeclared parameters and dependency cycles.
    """
    if not definition.steps:
        raise DefinitionError(f"Workflow '{definition.name}' declares no steps")

    step_names = [s.name for s in definition.steps]
    trigger_names = [t.name for t in definition.triggers]
    for kind, names in (("step", step_names), ("trigger", trigger_names)):
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise DefinitionError(f"Duplicate {kind} names: {dupes}")

    known = set(step_names)
    for step in definition.steps:
        owner = f"step '{step.name}'"
        if step.input and step.input_file:
            raise DefinitionError(f"{owner}: set either input or inputFile, not both")
        for dep in step.depends_on:
            if dep not in known:
                raise DefinitionError(f"{owner}: depends on unknown step '{dep}'")
        allowed = {"parameters", "outputs", "secrets"}
        _check_references(owner, step.spec, definition, allowed, known)
        _check_references(owner, step.when, definition, allowed, known)
        if step.name in step_dependencies(step):
            raise DefinitionError(f"{owner}: depends on itself")

    for trigger in definition.triggers:
        owner = f"trigger '{trigger.name}'"
        if trigger.input and trigger.input_file:
            raise DefinitionError(f"{owner}: set either input or inputFile, not both")
        _check_references(owner, trigger.spec, definition, {"secrets"}, known)
        if trigger.binding:
            for param in trigger.binding:
                if param not in definition.parameters:
                    raise DefinitionError(f"{owner}: binds undeclared parameter '{param}'")
            _check_references(owner, trigger.binding, definition, {"event"}, known)

    graph = build_graph(definition)
    cycle = find_cycle(graph)
    if cycle:
        raise DefinitionError(f"Dependency cycle: {' -> '.join(cycle)}")
    return graph
