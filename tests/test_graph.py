"""
Tests for graph parsing and static validation
"""
import json

import pytest


def _linear(node, edge):
    return {
        "id": "wf-1",
        "name": "Linear",
        "nodes": [
            node("in", "data-input"),
            node("ai", "ai-text", model="gpt-4"),
            node("out", "data-output"),
        ],
        "edges": [
            edge("in", "value", "ai", "prompt"),
            edge("ai", "text", "out", "data"),
        ],
    }


def test_parse_linear_graph(node, edge):
    """Valid graph: nodes built, ranks follow edges, data-output designated"""
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph(_linear(node, edge))

    assert graph.id == "wf-1"
    assert graph.name == "Linear"
    assert set(graph.nodes) == {"in", "ai", "out"}
    assert graph.rank == {"in": 0, "ai": 1, "out": 2}
    assert graph.sources == ["in"]
    assert graph.output_nodes == ["out"]
    assert graph.dead == frozenset()
    assert graph.inbound["ai"]["prompt"].source == "in"


def test_parse_accepts_json_text(node, edge):
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph(json.dumps(_linear(node, edge)))
    assert len(graph.edges) == 2

    graph = parse_graph(json.dumps(_linear(node, edge)).encode("utf-8"))
    assert len(graph.nodes) == 3


def test_properties_are_normalized(node):
    """Defaults merge under JSON values; unknown keys survive"""
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph({"nodes": [node("ai", "ai-text", temperature=0.2, note="keep me")], "edges": []})
    ai = graph.nodes["ai"]

    assert ai.properties["model"] == "gpt-3.5-turbo"
    assert ai.properties["maxTokens"] == 150
    assert ai.properties["temperature"] == 0.2
    assert ai.properties["note"] == "keep me"


def test_sinks_designated_without_data_output(node, edge):
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph({
        "nodes": [
            node("in", "data-input"),
            node("a", "data-transform"),
            node("b", "automation-slack", channel="#general"),
        ],
        "edges": [
            edge("in", "value", "a", "input"),
            edge("in", "value", "b", "message"),
        ],
    })
    assert graph.output_nodes == ["a", "b"]


def test_not_json_rejected():
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid, match="not valid JSON"):
        parse_graph("{nodes: ")
    with pytest.raises(GraphInvalid, match="JSON object"):
        parse_graph("[1, 2]")


def test_empty_workflow_rejected():
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid, match="no nodes"):
        parse_graph({"nodes": [], "edges": []})


def test_unknown_type_and_duplicate_id(node):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid) as exc_info:
        parse_graph({
            "nodes": [
                node("a", "data-input"),
                node("a", "data-input"),
                node("b", "teleport"),
            ],
            "edges": [],
        })

    problems = exc_info.value.problems
    assert any("Duplicate node id: a" in p for p in problems)
    assert any("Unknown node type: teleport" in p for p in problems)
    assert exc_info.value.kind == "GraphInvalid"


def test_bad_edges_are_all_reported(node, edge):
    """Every problem is collected before raising"""
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid) as exc_info:
        parse_graph({
            "nodes": [
                node("in", "data-input"),
                node("ai", "ai-text"),
                node("img", "ai-image"),
                node("out", "data-output"),
            ],
            "edges": [
                edge("in", "value", "ghost", "data"),
                edge("in", "nope", "out", "data"),
                edge("in", "value", "ai", "prompt"),
                edge("in", "value", "ai", "prompt"),
                edge("ai", "text", "img", "image"),
                {"from": {"node": "in"}, "to": {"node": "out", "port": "data"}},
            ],
        })

    problems = exc_info.value.problems
    assert len(problems) == 5
    assert any("missing node ghost" in p for p in problems)
    assert any("missing output port nope" in p for p in problems)
    assert any("ai.prompt receives more than one edge" in p for p in problems)
    assert any("incompatible types string -> file" in p for p in problems)
    assert any("Edge #5" in p for p in problems)


def test_property_validators_run_at_load(node):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid) as exc_info:
        parse_graph({
            "nodes": [
                node("ai", "ai-text", model="", maxTokens=5000),
                node("mail", "automation-email", port=70000),
                node("img", "ai-image", features=[]),
            ],
            "edges": [],
        })

    message = str(exc_info.value)
    assert "Node 'ai' (ai-text)" in message
    assert "Model is required" in message
    assert "Max tokens must be between 1 and 4096" in message
    assert "Valid port number is required" in message
    assert "At least one analysis feature must be selected" in message


def test_merge_ports_follow_input_count(node, edge):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    graph = parse_graph({
        "nodes": [node("in", "data-input"), node("m", "logic-merge", inputCount=3)],
        "edges": [edge("in", "value", "m", "input3")],
    })
    assert list(graph.nodes["m"].input_ports) == ["input1", "input2", "input3"]

    with pytest.raises(GraphInvalid, match="missing input port input3"):
        parse_graph({
            "nodes": [node("in", "data-input"), node("m", "logic-merge")],
            "edges": [edge("in", "value", "m", "input3")],
        })


def test_cycle_rejected(node, edge):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphCyclic

    with pytest.raises(GraphCyclic) as exc_info:
        parse_graph({
            "nodes": [node("in", "data-input"), node("a", "logic-merge"), node("b", "data-transform")],
            "edges": [
                edge("in", "value", "a", "input1"),
                edge("a", "merged", "b", "input"),
                edge("b", "output", "a", "input2"),
            ],
        })

    assert exc_info.value.nodes == ["a", "b"]
    assert exc_info.value.kind == "GraphCyclic"


def _loop_graph(node, edge, **loop_props):
    return {
        "nodes": [
            node("in", "data-input", defaultValue=[1, 2, 3]),
            node("loop", "logic-loop", **loop_props),
            node("double", "data-transform", transformation="math", operation="multiply", operand=2),
            node("out", "data-output"),
        ],
        "edges": [
            edge("in", "value", "loop", "collection"),
            edge("loop", "item", "double", "input"),
            edge("double", "output", "loop", "result"),
            edge("loop", "results", "out", "data"),
        ],
    }


def test_loop_back_edge_is_not_a_cycle(node, edge):
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph(_loop_graph(node, edge))
    info = graph.loops["loop"]

    assert info.body == frozenset({"double"})
    assert info.scope == frozenset({"double"})
    assert [str(e) for e in info.back_edges] == ["double.output -> loop.result"]
    assert info.depth == 1
    assert graph.owner["double"] == "loop"
    assert graph.top_scope == frozenset({"in", "loop", "out"})


def test_nested_loop_ownership(node, edge):
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph({
        "nodes": [
            node("in", "data-input"),
            node("outer", "logic-loop"),
            node("inner", "logic-loop"),
            node("inc", "data-transform", transformation="math", operation="add", operand=1),
            node("out", "data-output"),
        ],
        "edges": [
            edge("in", "value", "outer", "collection"),
            edge("outer", "item", "inner", "collection"),
            edge("inner", "item", "inc", "input"),
            edge("inc", "output", "inner", "result"),
            edge("inner", "results", "outer", "result"),
            edge("outer", "results", "out", "data"),
        ],
    })

    assert graph.loops["outer"].body == frozenset({"inner", "inc"})
    assert graph.loops["outer"].scope == frozenset({"inner"})
    assert graph.loops["inner"].scope == frozenset({"inc"})
    assert graph.loops["inner"].depth == 2
    assert graph.enclosing_loop("inc", None) == "outer"
    assert graph.enclosing_loop("inc", "outer") == "inner"


def test_loop_result_fed_from_outside_body(node, edge):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid, match="must be fed from the loop body"):
        parse_graph({
            "nodes": [node("in", "data-input"), node("loop", "logic-loop")],
            "edges": [
                edge("in", "value", "loop", "collection"),
                edge("in", "value", "loop", "result"),
            ],
        })


def test_body_consuming_own_results(node, edge):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid, match="cannot consume results"):
        parse_graph({
            "nodes": [node("loop", "logic-loop"), node("m", "logic-merge")],
            "edges": [
                edge("loop", "item", "m", "input1"),
                edge("loop", "results", "m", "input2"),
            ],
        })


def test_overlapping_loop_bodies(node, edge):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid, match="not nested"):
        parse_graph({
            "nodes": [node("l1", "logic-loop"), node("l2", "logic-loop"), node("m", "logic-merge")],
            "edges": [
                edge("l1", "item", "m", "input1"),
                edge("l2", "item", "m", "input2"),
            ],
        })


def test_loop_fed_only_through_body_port_is_a_source(node, edge):
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph({
        "nodes": [
            node("in", "data-input"),
            node("out", "data-output"),
            node("loop", "logic-loop", collection=[1, 2]),
            node("body", "data-transform"),
        ],
        "edges": [
            edge("in", "value", "out", "data"),
            edge("loop", "item", "body", "input"),
            edge("body", "output", "loop", "result"),
        ],
    })

    assert graph.sources == ["in", "loop"]
    assert graph.dead == frozenset()


def test_body_reading_a_node_after_the_loop(node, edge):
    from nodeflow.core.execution.graph import parse_graph
    from nodeflow.core.execution.errors import GraphInvalid

    with pytest.raises(GraphInvalid, match="only runs after the loop finishes"):
        parse_graph({
            "nodes": [
                node("in", "data-input", defaultValue=[1]),
                node("loop", "logic-loop"),
                node("count", "data-transform"),
                node("m", "logic-merge"),
            ],
            "edges": [
                edge("in", "value", "loop", "collection"),
                edge("loop", "results", "count", "input"),
                edge("loop", "item", "m", "input1"),
                edge("count", "output", "m", "input2"),
                edge("m", "merged", "loop", "result"),
            ],
        })


def test_branch_exclusive_sets(node, edge):
    from nodeflow.core.execution.graph import parse_graph

    graph = parse_graph({
        "nodes": [
            node("flag", "data-input"),
            node("a", "data-input", defaultValue="yes"),
            node("b", "data-input", defaultValue="no"),
            node("b2", "data-transform"),
            node("shared", "data-input", defaultValue="s"),
            node("cond", "logic-condition"),
            node("cond2", "logic-condition"),
            node("out", "data-output"),
            node("log", "data-output"),
        ],
        "edges": [
            edge("flag", "value", "cond", "condition"),
            edge("a", "value", "cond", "trueValue"),
            edge("b", "value", "b2", "input"),
            edge("b2", "output", "cond", "falseValue"),
            edge("cond", "result", "out", "data"),
            edge("flag", "value", "cond2", "condition"),
            edge("shared", "value", "cond2", "trueValue"),
            edge("shared", "value", "log", "data"),
        ],
    })

    assert graph.exclusive[("cond", "trueValue")] == frozenset({"a"})
    assert graph.exclusive[("cond", "falseValue")] == frozenset({"b", "b2"})
    assert ("cond2", "trueValue") not in graph.exclusive
    assert graph.gates["b"] == [("cond", "falseValue")]
    assert "flag" not in graph.gates
