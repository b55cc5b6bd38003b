"""Declarative Flow Graph and Interpreter.

A flow is a DAG of named nodes. Step nodes execute a named step and follow their
``COMPLETED`` edge; decision nodes call a decider and follow the edge whose label it
returns (e.g. ``BULKLOAD``, ``INCREMENTALLOAD``, a resource type name). Two terminal
targets exist: ``END`` (flow completed) and ``FAILED``.

Architecture:
    - Framework independent: the graph is plain data, the interpreter a loop
    - The graph is validated when it is built (start node, edge targets, cycles)
    - A failing step ends the flow as FAILED; later steps are not run
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, Union

from fhir_to_omop.domain.ports import FlowDefinitionError

logger = logging.getLogger(__name__)

END = "END"
FAILED = "FAILED"
COMPLETED = "COMPLETED"

_TERMINALS = (END, FAILED)


@dataclass(frozen=True)
class StepNode:
    """Runs one step and continues with ``next_node``.

    Attributes:
        name: Node name, unique in the flow
        step: Name passed to the step runner (defaults to the node name)
        next_node: Target of the COMPLETED edge
    """
    name: str
    next_node: str = END
    step: Optional[str] = None

    @property
    def step_name(self) -> str:
        return self.step or self.name

    @property
    def transitions(self) -> Mapping[str, str]:
        return {COMPLETED: self.next_node}


@dataclass(frozen=True)
class DecisionNode:
    """Branches on the label returned by ``decider``.

    Attributes:
        name: Node name, unique in the flow
        decider: Returns the label of the edge to follow
        transitions: Edge label to target node
        default: Target for labels without an edge (None makes them a flow failure)
    """
    name: str
    decider: Callable[[], str]
    transitions: Mapping[str, str] = field(default_factory=dict)
    default: Optional[str] = None


Node = Union[StepNode, DecisionNode]


class FlowStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class FlowExecution:
    """Outcome of one interpreter run."""
    status: FlowStatus
    path: list[str] = field(default_factory=list)
    failed_node: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == FlowStatus.COMPLETED


class Flow:
    """A validated flow graph.

    Parameters:
        name: Flow name (for logging)
        start: Name of the first node
        nodes: Step and decision nodes

    Raises:
        FlowDefinitionError: On duplicate names, unknown start or edge targets, or cycles
    """

    def __init__(self, name: str, start: str, nodes: Iterable[Node]):
        self.name = name
        self.start = start
        self.nodes: dict[str, Node] = {}
        for node in nodes:
            if node.name in self.nodes or node.name in _TERMINALS:
                raise FlowDefinitionError(f"Duplicate or reserved node name [{node.name}] in flow {name}")
            self.nodes[node.name] = node
        self._validate()

    def _targets(self, node: Node) -> list[str]:
        targets = list(node.transitions.values())
        if isinstance(node, DecisionNode) and node.default is not None:
            targets.append(node.default)
        return targets

    def _validate(self) -> None:
        if self.start not in self.nodes:
            raise FlowDefinitionError(f"Start node [{self.start}] not defined in flow {self.name}")

        for node in self.nodes.values():
            for target in self._targets(node):
                if target not in self.nodes and target not in _TERMINALS:
                    raise FlowDefinitionError(
                        f"Node [{node.name}] of flow {self.name} points to unknown node [{target}]"
                    )

        # Depth-first search for back edges
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(name: str) -> None:
            if name in _TERMINALS or name in done:
                return
            if name in visiting:
                raise FlowDefinitionError(f"Flow {self.name} contains a cycle through [{name}]")
            visiting.add(name)
            for target in self._targets(self.nodes[name]):
                visit(target)
            visiting.discard(name)
            done.add(name)

        for name in self.nodes:
            visit(name)

    def step_names(self) -> list[str]:
        return [node.step_name for node in self.nodes.values() if isinstance(node, StepNode)]


class FlowInterpreter:
    """Walks a flow from its start node to a terminal.

    Parameters:
        flow: The validated flow graph
        step_runner: Executes a step by name; any exception fails the flow

    Example Usage:
        ```python
        flow = Flow("demo", "mode", [
            DecisionNode("mode", lambda: "A", {"A": "first", "B": END}),
            StepNode("first", next_node=END),
        ])
        execution = FlowInterpreter(flow, run_step).run()
        execution.path   # ["mode", "first"]
        ```
    """

    def __init__(self, flow: Flow, step_runner: Callable[[str], None]):
        self.flow = flow
        self.step_runner = step_runner

    def run(self) -> FlowExecution:
        execution = FlowExecution(status=FlowStatus.COMPLETED)
        current = self.flow.start

        while current not in _TERMINALS:
            node = self.flow.nodes[current]
            execution.path.append(node.name)

            if isinstance(node, StepNode):
                try:
                    self.step_runner(node.step_name)
                except Exception as e:
                    logger.error(f"Step [{node.step_name}] of flow {self.flow.name} failed: {e}")
                    execution.status = FlowStatus.FAILED
                    execution.failed_node = node.name
                    execution.error = e
                    return execution
                current = node.next_node
            else:
                label = node.decider()
                target = node.transitions.get(label, node.default)
                logger.debug(f"Decision [{node.name}] of flow {self.flow.name}: {label} -> {target}")
                if target is None:
                    target = FAILED
                current = target

        if current == FAILED:
            execution.status = FlowStatus.FAILED
            execution.failed_node = execution.path[-1] if execution.path else None
        return execution
