"""
Tests for scheduling: ordering, concurrency, failures, branches, loops, cancellation
"""
import threading
import time

import pytest

from conftest import make_edge as E, make_node as N, SlowServices, EchoServices


def _entries(result, node_id):
    return [entry for entry in result.log if entry["nodeId"] == node_id]


def _entry(result, node_id):
    entries = _entries(result, node_id)
    assert len(entries) == 1, entries
    return entries[0]


def _failing_services(method, error):
    from nodeflow.core.services import SimulatedServices

    class Failing(SimulatedServices):
        pass

    def fail(self, *args):
        raise error

    setattr(Failing, method, fail)
    return Failing()


# ----------------------------------------------------------------------
# Ordering and concurrency
# ----------------------------------------------------------------------

def test_nodes_run_after_their_inputs(engine):
    workflow = {
        "nodes": [N("in", "data-input", path="$.q"), N("ai", "ai-text"), N("out", "data-output")],
        "edges": [E("in", "value", "ai", "prompt"), E("ai", "text", "out", "data")],
    }
    result = engine.execute(workflow, input={"q": "hi"}, services=EchoServices())

    assert result.success
    assert result.output == "ECHO:hi"
    assert [e["nodeId"] for e in result.log] == ["in", "ai", "out"]
    assert _entry(result, "ai")["startedAt"] >= _entry(result, "in")["finishedAt"]
    assert _entry(result, "out")["startedAt"] >= _entry(result, "ai")["finishedAt"]
    assert all(e["state"] == "Succeeded" for e in result.log)


def test_trace_order_is_deterministic_at_concurrency_one(engine):
    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue=1),
            N("b", "data-transform"),
            N("a", "data-transform"),
            N("m", "logic-merge"),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "b", "input"),
            E("in", "value", "a", "input"),
            E("a", "output", "m", "input1"),
            E("b", "output", "m", "input2"),
            E("m", "merged", "out", "data"),
        ],
    }
    orders = set()
    for _ in range(3):
        result = engine.execute(workflow, options={"concurrency": 1})
        assert result.output == [1, 1]
        orders.add(tuple(e["nodeId"] for e in result.log))
    assert orders == {("in", "a", "b", "m", "out")}


@pytest.mark.parametrize("concurrency,expected", [(1, 1), (2, 2), (8, 4)])
def test_concurrency_is_bounded(engine, concurrency, expected):
    nodes = [N("in", "data-input", defaultValue="x"), N("m", "logic-merge", inputCount=4), N("out", "data-output")]
    edges = [E("m", "merged", "out", "data")]
    for i in range(1, 5):
        nodes.append(N(f"ai{i}", "ai-text"))
        edges.append(E("in", "value", f"ai{i}", "prompt"))
        edges.append(E(f"ai{i}", "text", "m", f"input{i}"))

    services = SlowServices(delay=0.05)
    result = engine.execute({"nodes": nodes, "edges": edges}, options={"concurrency": concurrency}, services=services)

    assert result.success
    assert result.output == ["done:x"] * 4
    assert services.max_running == expected


# ----------------------------------------------------------------------
# Failures
# ----------------------------------------------------------------------

def test_failure_skips_consumers_but_not_independent_branches(engine):
    from nodeflow.core.services import ServiceError

    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue="hello"),
            N("slack", "automation-slack", channel="#general"),
            N("out1", "data-output"),
            N("ai", "ai-text"),
            N("out2", "data-output"),
        ],
        "edges": [
            E("in", "value", "slack", "message"),
            E("slack", "messageId", "out1", "data"),
            E("in", "value", "ai", "prompt"),
            E("ai", "text", "out2", "data"),
        ],
    }
    services = _failing_services("send_slack", ServiceError("invalid_auth", transient=False))
    result = engine.execute(workflow, services=services)

    assert result.status.value == "Failed"
    assert result.error_kind == "ExternalRejected"
    assert result.error.startswith("Node slack (automation-slack) failed:")
    assert "invalid_auth" in result.error

    slack = _entry(result, "slack")
    assert slack["state"] == "Failed"
    assert len(slack["attempts"]) == 1
    assert _entry(result, "out1")["skipReason"] == "UpstreamFailed"
    assert _entry(result, "ai")["state"] == "Succeeded"
    assert _entry(result, "out2")["state"] == "Succeeded"
    assert result.output == {"out2": "AI processing simulated for: hello"}


def test_coercion_failure_fails_consumer_without_running_it(engine):
    workflow = {
        "nodes": [N("in", "data-input", defaultValue="not json"), N("zap", "automation-zapier")],
        "edges": [E("in", "value", "zap", "data")],
    }
    result = engine.execute(workflow)

    zap = _entry(result, "zap")
    assert zap["state"] == "Failed"
    assert zap["errorKind"] == "CoercionFailed"
    assert "in.value -> zap.data" in zap["error"]
    assert zap["attempts"] == []
    assert zap["elapsedMs"] == 0
    assert result.status.value == "Failed"


def test_coercions_are_recorded(engine):
    workflow = {
        "nodes": [N("in", "data-input", defaultValue='{"a": 1}'), N("zap", "automation-zapier", webhookUrl="https://hook")],
        "edges": [E("in", "value", "zap", "data")],
    }
    result = engine.execute(workflow, options={"verbose": True})

    zap = _entry(result, "zap")
    assert zap["coercions"] == ["data: string->object"]
    assert zap["inputs"] == {"data": {"a": 1}}
    assert result.output == {"simulated": True, "url": "https://hook", "method": "POST"}


def test_unexpected_exception_becomes_executor_error(engine):
    workflow = {
        "nodes": [N("in", "data-input", defaultValue="x"), N("ai", "ai-text"), N("out", "data-output")],
        "edges": [E("in", "value", "ai", "prompt"), E("ai", "text", "out", "data")],
    }
    result = engine.execute(workflow, services=_failing_services("process_text", KeyError("boom")))

    ai = _entry(result, "ai")
    assert ai["errorKind"] == "ExecutorError"
    assert "KeyError" in ai["error"]
    assert _entry(result, "out")["skipReason"] == "UpstreamFailed"


def test_terminal_transition_happens_once():
    from nodeflow.core.execution.errors import SchedulerInvariantViolated
    from nodeflow.core.execution.node_run import NodeRun, NodeState

    run = NodeRun("a", "data-input")
    run.finish(NodeState.SUCCEEDED, 1.0)
    with pytest.raises(SchedulerInvariantViolated):
        run.finish(NodeState.FAILED, 2.0)
    with pytest.raises(SchedulerInvariantViolated):
        run.mark_ready(10)


def test_ready_limit_is_enforced():
    from nodeflow.core.execution.errors import SchedulerInvariantViolated
    from nodeflow.core.execution.node_run import NodeRun, NodeState

    run = NodeRun("a", "data-input")
    run.mark_ready(1)
    run.state = NodeState.PENDING
    with pytest.raises(SchedulerInvariantViolated, match="limit 1"):
        run.mark_ready(1)


# ----------------------------------------------------------------------
# Conditions
# ----------------------------------------------------------------------

def _branch_workflow(flag, **condition_props):
    return {
        "nodes": [
            N("flag", "data-input", defaultValue=flag),
            N("a", "data-input", defaultValue="A"),
            N("b", "data-input", defaultValue="B"),
            N("b2", "data-transform"),
            N("cond", "logic-condition", **condition_props),
            N("out", "data-output"),
        ],
        "edges": [
            E("flag", "value", "cond", "condition"),
            E("a", "value", "cond", "trueValue"),
            E("b", "value", "b2", "input"),
            E("b2", "output", "cond", "falseValue"),
            E("cond", "result", "out", "data"),
        ],
    }


def test_false_condition_prunes_true_branch(engine):
    result = engine.execute(_branch_workflow(False))

    assert result.success
    assert result.output == "B"
    a = _entry(result, "a")
    assert a["state"] == "Skipped"
    assert a["skipReason"] == "DeadBranch"
    assert _entry(result, "b2")["state"] == "Succeeded"


def test_true_condition_prunes_false_branch(engine):
    result = engine.execute(_branch_workflow(True))

    assert result.output == "A"
    assert _entry(result, "b")["skipReason"] == "DeadBranch"
    assert _entry(result, "b2")["skipReason"] == "DeadBranch"
    # Pruned nodes never start
    assert _entry(result, "b")["elapsedMs"] == 0


def test_condition_operator(engine):
    result = engine.execute(_branch_workflow(15, operator="greaterThan", compareValue=10))
    assert result.output == "A"


def test_shared_branch_input_is_not_pruned(engine):
    workflow = _branch_workflow(False)
    workflow["nodes"].append(N("out2", "data-output"))
    workflow["edges"].append(E("a", "value", "out2", "data"))

    result = engine.execute(workflow)

    assert result.success
    assert result.output == {"out": "B", "out2": "A"}
    assert _entry(result, "a")["state"] == "Succeeded"


def _failing_condition_workflow(**condition_props):
    return {
        "nodes": [
            N("in", "data-input", defaultValue="abc"),
            N("t", "data-transform", transformation="math", operation="add", operand=1),
            N("yes", "data-input", defaultValue="yes"),
            N("no", "data-input", defaultValue="no"),
            N("cond", "logic-condition", **condition_props),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "t", "input"),
            E("t", "output", "cond", "condition"),
            E("yes", "value", "cond", "trueValue"),
            E("no", "value", "cond", "falseValue"),
            E("cond", "result", "out", "data"),
        ],
    }


def test_error_as_false_reads_failed_condition_as_false(engine):
    result = engine.execute(_failing_condition_workflow(errorAsFalse=True, condition=True))

    assert _entry(result, "t")["state"] == "Failed"
    assert _entry(result, "yes")["skipReason"] == "DeadBranch"
    assert _entry(result, "cond")["state"] == "Succeeded"
    assert result.output == "no"
    assert result.status.value == "Completed"


def test_failed_condition_input_fails_condition(engine):
    result = engine.execute(_failing_condition_workflow())

    cond = _entry(result, "cond")
    assert cond["state"] == "Failed"
    assert cond["errorKind"] == "UpstreamFailed"
    assert _entry(result, "out")["skipReason"] == "UpstreamFailed"
    assert result.status.value == "Failed"
    assert result.error.startswith("Node t (data-transform) failed:")


# ----------------------------------------------------------------------
# Loops
# ----------------------------------------------------------------------

def _loop_workflow(items, body_props=None, **loop_props):
    body_props = body_props or {"transformation": "math", "operation": "multiply", "operand": 2}
    return {
        "nodes": [
            N("in", "data-input", defaultValue=items),
            N("loop", "logic-loop", **loop_props),
            N("double", "data-transform", **body_props),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "loop", "collection"),
            E("loop", "item", "double", "input"),
            E("double", "output", "loop", "result"),
            E("loop", "results", "out", "data"),
        ],
    }


def test_loop_collects_back_edge_results(engine):
    result = engine.execute(_loop_workflow([1, 2, 3]))

    assert result.success
    assert result.output == [2, 4, 6]
    assert [e["iteration"] for e in _entries(result, "double")] == [[0], [1], [2]]
    loop = _entry(result, "loop")
    assert loop["state"] == "Succeeded"
    # The loop finishes after its last body node
    assert loop["finishedAt"] >= _entries(result, "double")[-1]["finishedAt"]


def test_loop_over_empty_collection(engine):
    result = engine.execute(_loop_workflow([]))

    assert result.output == []
    assert _entries(result, "double") == []


def test_loop_bounded(engine):
    result = engine.execute(_loop_workflow([1, 2, 3], maxIterations=2))

    loop = _entry(result, "loop")
    assert loop["state"] == "Failed"
    assert loop["errorKind"] == "LoopBounded"
    assert len(_entries(result, "double")) == 2
    assert _entry(result, "out")["skipReason"] == "UpstreamFailed"
    assert result.error_kind == "LoopBounded"


def test_iteration_failure_fails_loop(engine):
    result = engine.execute(_loop_workflow([1, "x", 3]))

    doubles = _entries(result, "double")
    assert [e["state"] for e in doubles] == ["Succeeded", "Failed"]
    loop = _entry(result, "loop")
    assert loop["errorKind"] == "IterationFailed"
    assert "iteration 1" in loop["error"]
    assert result.status.value == "Failed"


def test_parallel_iterations_share_the_budget(engine):
    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue=["a", "b", "c", "d"]),
            N("loop", "logic-loop", parallel=True),
            N("ai", "ai-text"),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "loop", "collection"),
            E("loop", "item", "ai", "prompt"),
            E("ai", "text", "loop", "result"),
            E("loop", "results", "out", "data"),
        ],
    }
    services = SlowServices(delay=0.05)
    result = engine.execute(workflow, options={"concurrency": 2}, services=services)

    assert result.output == ["done:a", "done:b", "done:c", "done:d"]
    assert services.max_running == 2
    assert sorted(services.calls) == ["a", "b", "c", "d"]


def test_sequential_iterations_do_not_overlap(engine):
    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue=["a", "b", "c"]),
            N("loop", "logic-loop"),
            N("ai", "ai-text"),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "loop", "collection"),
            E("loop", "item", "ai", "prompt"),
            E("ai", "text", "loop", "result"),
            E("loop", "results", "out", "data"),
        ],
    }
    services = SlowServices(delay=0.01)
    result = engine.execute(workflow, options={"concurrency": 4}, services=services)

    assert result.output == ["done:a", "done:b", "done:c"]
    assert services.max_running == 1
    assert services.calls == ["a", "b", "c"]


def test_nested_loops(engine):
    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue=[[1, 2], [3]]),
            N("outer", "logic-loop"),
            N("inner", "logic-loop"),
            N("inc", "data-transform", transformation="math", operation="add", operand=1),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "outer", "collection"),
            E("outer", "item", "inner", "collection"),
            E("inner", "item", "inc", "input"),
            E("inc", "output", "inner", "result"),
            E("inner", "results", "outer", "result"),
            E("outer", "results", "out", "data"),
        ],
    }
    result = engine.execute(workflow)

    assert result.success
    assert result.output == [[2, 3], [4]]
    assert [e["iteration"] for e in _entries(result, "inc")] == [[0, 0], [0, 1], [1, 0]]
    assert [e["iteration"] for e in _entries(result, "inner")] == [[0], [1]]


def test_loop_body_reads_values_from_outside(engine):
    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue=[1, 2]),
            N("k", "data-input", defaultValue=100),
            N("loop", "logic-loop"),
            N("m", "logic-merge"),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "loop", "collection"),
            E("k", "value", "m", "input2"),
            E("loop", "item", "m", "input1"),
            E("m", "merged", "loop", "result"),
            E("loop", "results", "out", "data"),
        ],
    }
    result = engine.execute(workflow)

    assert result.output == [[1, 100], [2, 100]]
    assert _entry(result, "k")["finishedAt"] <= _entry(result, "loop")["startedAt"]


def test_loop_without_body_passes_collection_through(engine):
    workflow = {
        "nodes": [N("in", "data-input", defaultValue=[1, 2]), N("loop", "logic-loop"), N("out", "data-output")],
        "edges": [E("in", "value", "loop", "collection"), E("loop", "results", "out", "data")],
    }
    assert engine.execute(workflow).output == [1, 2]


def test_loop_collects_body_output_without_back_edge(engine):
    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue=[1, 2]),
            N("loop", "logic-loop"),
            N("inc", "data-transform", transformation="math", operation="add", operand=10),
            N("each", "data-output"),
            N("out", "data-output"),
        ],
        "edges": [
            E("in", "value", "loop", "collection"),
            E("loop", "item", "inc", "input"),
            E("inc", "output", "each", "data"),
            E("loop", "results", "out", "data"),
        ],
    }
    result = engine.execute(workflow)

    assert result.output == {"each": [11, 12], "out": [11, 12]}


# ----------------------------------------------------------------------
# Graph shape
# ----------------------------------------------------------------------

def test_loop_with_property_collection_runs_its_body(engine):
    workflow = {
        "nodes": [
            N("loop", "logic-loop", collection=[1, 2, 3]),
            N("plus", "data-transform", transformation="math", operation="add", operand=10),
            N("out", "data-output"),
        ],
        "edges": [
            E("loop", "item", "plus", "input"),
            E("plus", "output", "loop", "result"),
            E("loop", "results", "out", "data"),
        ],
    }
    result = engine.execute(workflow)

    assert result.success
    assert result.output == [11, 12, 13]
    assert _entry(result, "loop")["state"] == "Succeeded"
    assert all(entry.get("skipReason") != "Unreachable" for entry in result.log)


def _nested_loops(levels):
    collection = 1
    for _ in range(levels):
        collection = [collection]
    loops = [f"l{level}" for level in range(1, levels + 1)]
    nodes = [N("in", "data-input", defaultValue=collection)]
    nodes += [N(loop_id, "logic-loop") for loop_id in loops]
    nodes += [N("inc", "data-transform", transformation="math", operation="add", operand=1), N("out", "data-output")]
    edges = [E("in", "value", loops[0], "collection"), E(loops[0], "results", "out", "data")]
    for outer, inner in zip(loops, loops[1:]):
        edges.append(E(outer, "item", inner, "collection"))
        edges.append(E(inner, "results", outer, "result"))
    edges.append(E(loops[-1], "item", "inc", "input"))
    edges.append(E("inc", "output", loops[-1], "result"))
    return {"nodes": nodes, "edges": edges}


def test_loop_nesting_limit(engine):
    from nodeflow.core.config import Config

    levels = Config.MAX_LOOP_DEPTH + 1
    result = engine.execute(_nested_loops(levels))

    innermost = _entry(result, f"l{levels}")
    assert innermost["state"] == "Failed"
    assert innermost["errorKind"] == "LoopBounded"
    assert _entry(result, f"l{levels - 1}")["errorKind"] == "IterationFailed"
    assert _entries(result, "inc") == []
    assert result.status.value == "Failed"


def test_loop_nesting_limit_is_configurable(engine, monkeypatch):
    from nodeflow.core.config import Config

    assert engine.execute(_nested_loops(2)).output == [[2]]

    monkeypatch.setattr(Config, "MAX_LOOP_DEPTH", 1)
    result = engine.execute(_nested_loops(2))

    assert _entry(result, "l2")["errorKind"] == "LoopBounded"
    assert _entry(result, "l1")["errorKind"] == "IterationFailed"
    assert result.error_kind == "LoopBounded"


def test_multiple_outputs_form_an_object(engine):
    workflow = {
        "nodes": [
            N("in", "data-input", defaultValue=2),
            N("t", "data-transform", transformation="math", operation="multiply", operand=3),
            N("raw", "data-output"),
            N("tripled", "data-output"),
        ],
        "edges": [
            E("in", "value", "raw", "data"),
            E("in", "value", "t", "input"),
            E("t", "output", "tripled", "data"),
        ],
    }
    assert engine.execute(workflow).output == {"raw": 2, "tripled": 6}


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

def test_cancellation_token_stops_execution(engine):
    from nodeflow.core.execution import CancellationToken

    workflow = {
        "nodes": [N("in", "data-input", defaultValue="x"), N("ai", "ai-text"), N("out", "data-output")],
        "edges": [E("in", "value", "ai", "prompt"), E("ai", "text", "out", "data")],
    }
    token = CancellationToken()
    timer = threading.Timer(0.1, token.cancel)
    timer.start()
    started = time.perf_counter()
    try:
        result = engine.execute(workflow, services=SlowServices(delay=5), cancellation=token)
    finally:
        timer.cancel()

    assert time.perf_counter() - started < 3
    assert result.status.value == "Cancelled"
    assert _entry(result, "ai")["state"] == "Cancelled"
    assert _entry(result, "out")["skipReason"] == "Cancelled"
