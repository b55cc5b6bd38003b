"""Unit tests for the flow graph and its interpreter."""

import pytest

from fhir_to_omop.domain.flow import END, FAILED, DecisionNode, Flow, FlowInterpreter, FlowStatus, StepNode
from fhir_to_omop.domain.ports import FlowDefinitionError


class TestFlowDefinition:
    """Test validation of flow graphs."""

    def test_unknown_start(self):
        """Test the start node must exist."""
        with pytest.raises(FlowDefinitionError):
            Flow("demo", "missing", [StepNode("a")])

    def test_unknown_target(self):
        """Test every edge must point to a node or a terminal."""
        with pytest.raises(FlowDefinitionError):
            Flow("demo", "a", [StepNode("a", next_node="b")])

    def test_duplicate_name(self):
        """Test node names are unique."""
        with pytest.raises(FlowDefinitionError):
            Flow("demo", "a", [StepNode("a"), StepNode("a")])

    def test_reserved_name(self):
        """Test terminal names cannot be used for nodes."""
        with pytest.raises(FlowDefinitionError):
            Flow("demo", END, [StepNode(END)])

    def test_cycle(self):
        """Test back edges are rejected."""
        with pytest.raises(FlowDefinitionError) as exc_info:
            Flow("demo", "a", [StepNode("a", next_node="b"), StepNode("b", next_node="a")])

        assert "cycle" in str(exc_info.value)

    def test_step_names(self):
        """Test step nodes report their step, which defaults to the node name."""
        flow = Flow("demo", "a", [StepNode("a", next_node="b"), StepNode("b", step="Condition")])

        assert flow.step_names() == ["a", "Condition"]


class TestFlowInterpreter:
    """Test execution of flow graphs."""

    def test_follows_decision(self):
        """Test the edge labelled by the decider is followed."""
        ran = []
        flow = Flow("demo", "mode", [
            DecisionNode("mode", lambda: "B", {"A": "first", "B": "second"}),
            StepNode("first"),
            StepNode("second"),
        ])

        execution = FlowInterpreter(flow, ran.append).run()

        assert execution.succeeded
        assert execution.path == ["mode", "second"]
        assert ran == ["second"]

    def test_failing_step_stops_flow(self):
        """Test a raising step fails the flow and later steps are not run."""
        ran = []

        def runner(name):
            ran.append(name)
            if name == "b":
                raise RuntimeError("boom")

        flow = Flow("demo", "a", [StepNode("a", next_node="b"), StepNode("b", next_node="c"), StepNode("c")])

        execution = FlowInterpreter(flow, runner).run()

        assert execution.status == FlowStatus.FAILED
        assert execution.failed_node == "b"
        assert str(execution.error) == "boom"
        assert ran == ["a", "b"]

    def test_unknown_label_without_default_fails(self):
        """Test a label without edge and without default ends the flow as failed."""
        flow = Flow("demo", "choose", [DecisionNode("choose", lambda: "X", {"A": END})])

        execution = FlowInterpreter(flow, lambda name: None).run()

        assert execution.status == FlowStatus.FAILED
        assert execution.failed_node == "choose"

    def test_unknown_label_uses_default(self):
        """Test a default edge catches unknown labels."""
        flow = Flow("demo", "choose", [DecisionNode("choose", lambda: "X", {"A": FAILED}, default=END)])

        assert FlowInterpreter(flow, lambda name: None).run().succeeded
