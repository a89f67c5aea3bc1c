"""Tests for ExecutionEngine."""

import random
import threading
import time
from unittest.mock import Mock

import pytest

from workflow_core.config import get_testing_config
from workflow_core.core.exceptions import (
    ExecutionEngineError,
    ExecutionNotFoundError,
    ExecutionTimeoutError,
    GraphValidationError,
    WorkflowNotFoundError,
)
from workflow_core.core.execution_engine import ExecutionEngine
from workflow_core.core.node_handlers import NodeHandler
from workflow_core.models.core import EventType, ExecutionStatus

from builders import build_workflow, connect, node, trigger


def _events_for(events, execution_id, event_type=None, node_id=None):
    return [
        e for e in list(events)
        if e.execution_id == execution_id
        and (event_type is None or e.type == event_type)
        and (node_id is None or e.node_id == node_id)
    ]


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def explode(params, variables):
    raise RuntimeError("boom")


@pytest.fixture
def failing_engine(engine):
    """Engine with an action that always raises."""
    engine.actions.register("explode", explode)
    return engine


class TestBasicExecution:
    """Test cases for straightforward workflow runs."""

    def test_linear_workflow(self, engine, events, run):
        """Outputs flow into later nodes and events bracket the run."""
        workflow = build_workflow(
            [trigger(), node("greet", action="set", variables={"greeting": "hello"}),
             node("say", action="log", message="{{greeting}} world")],
            [connect("start", "greet"), connect("greet", "say")],
        )
        context = run(workflow)

        assert context.status == ExecutionStatus.COMPLETED
        assert context.variables["greeting"] == "hello"
        assert context.node_outputs["say"] == {"message": "hello world"}
        assert context.variables["actionResult"] == {"message": "hello world"}
        assert "triggerResult" in context.variables
        assert any(entry.message == "hello world" for entry in context.logs)

        mine = _events_for(events, context.execution_id)
        assert mine[0].type == EventType.START
        assert mine[-1].type == EventType.COMPLETE
        assert [e.node_id for e in mine if e.type == EventType.NODE_START] == ["start", "greet", "say"]

    def test_variable_defaults_and_input(self, run):
        workflow = build_workflow(
            [trigger(), node("echo", action="set", variables={"out": "{{greeting}} {{name}}"})],
            [connect("start", "echo")],
            variables={"greeting": "hi", "name": "nobody"},
        )
        context = run(workflow, {"name": "ada"})
        assert context.variables["out"] == "hi ada"
        assert context.metadata["input"] == {"name": "ada"}

    def test_execute_stored_workflow_by_id(self, engine, graph_manager):
        workflow = graph_manager.create_workflow(build_workflow([trigger()]))
        execution_id = engine.execute_workflow(workflow.id)
        assert engine.wait_for_completion(execution_id, timeout=5).status == ExecutionStatus.COMPLETED

        with pytest.raises(WorkflowNotFoundError):
            engine.execute_workflow("missing")

    def test_deterministic_node_order(self, engine, events, run):
        """Nodes run in topological order with ties broken by authoring order."""
        workflow = build_workflow(
            [trigger(), node("a", action="log"), node("b", action="log"), node("d", action="log")],
            [connect("start", "b"), connect("start", "a"), connect("a", "d"), connect("b", "d")],
        )
        for _ in range(2):
            context = run(workflow)
            started = [e.node_id for e in _events_for(events, context.execution_id, EventType.NODE_START)]
            assert started == ["start", "a", "b", "d"]

    @pytest.mark.parametrize("seed", range(5))
    def test_random_dags_respect_edges(self, events, run, seed):
        """Every node of a random DAG runs once, after all of its predecessors."""
        rng = random.Random(seed)
        ranked = ["start"] + [f"n{i}" for i in range(rng.randint(4, 9))]
        edges = set()
        for j in range(1, len(ranked)):
            edges.add((ranked[rng.randrange(j)], ranked[j]))
            for i in range(j):
                if rng.random() < 0.3:
                    edges.add((ranked[i], ranked[j]))

        authored = ranked[1:]
        rng.shuffle(authored)
        workflow = build_workflow(
            [trigger()] + [node(node_id, action="log") for node_id in authored],
            [connect(source, target) for source, target in sorted(edges)],
        )
        context = run(workflow)

        assert context.status == ExecutionStatus.COMPLETED
        started = [e.node_id for e in _events_for(events, context.execution_id, EventType.NODE_START)]
        assert sorted(started) == sorted(ranked)
        position = {node_id: index for index, node_id in enumerate(started)}
        for source, target in edges:
            assert position[source] < position[target]

    def test_cyclic_workflow_fails(self, run):
        workflow = build_workflow(
            [trigger(), node("a", action="log"), node("b", action="log")],
            [connect("start", "a"), connect("a", "b"), connect("b", "a")],
        )
        context = run(workflow)
        assert context.status == ExecutionStatus.FAILED
        assert "cycle" in context.error

    def test_listener_failure_does_not_break_execution(self, engine, run):
        def broken(event):
            raise ValueError("listener bug")

        engine.events.subscribe(broken)
        assert run(build_workflow([trigger()])).status == ExecutionStatus.COMPLETED


class TestNodeTypes:
    """Test cases for the built-in node handlers."""

    def test_transform_with_output_variable(self, run):
        workflow = build_workflow(
            [trigger(), node("calc", "transform", expression="price * quantity", outputVariable="total")],
            [connect("start", "calc")],
        )
        context = run(workflow, {"price": 2, "quantity": 5})
        assert context.variables["total"] == 10
        assert context.variables["transformResult"] == 10

    def test_parallel_results_in_task_order(self, run):
        tasks = [
            {"type": "delay", "config": {"duration": 30}},
            {"type": "action", "config": {"action": "set", "variables": {"a": 1}}},
            {"type": "transform", "config": {"expression": "2 * 21"}},
        ]
        workflow = build_workflow(
            [trigger(), node("fan", "parallel", tasks=tasks, maxConcurrency=2)],
            [connect("start", "fan")],
        )
        context = run(workflow)
        assert context.status == ExecutionStatus.COMPLETED
        assert context.variables["parallelResults"] == [{"delayedMs": 30}, {"a": 1}, 42]
        assert context.variables["a"] == 1

    def test_loop_node_accumulates(self, run):
        """Loop body tasks see the current item and bind variables across iterations."""
        body = [{
            "type": "action",
            "config": {"action": "increment", "params": {"variable": "total", "by": "{{item}}"},
                       "mergeOutput": True},
        }]
        workflow = build_workflow(
            [trigger(), node("sum", "loop", type="for-each", collection="{{items}}", body=body)],
            [connect("start", "sum")],
        )
        context = run(workflow, {"items": [1, 2, 3], "total": 0})
        assert context.status == ExecutionStatus.COMPLETED
        assert context.variables["total"] == 6
        assert context.variables["loopResults"]["iterations"] == 3

    def test_plugin_and_custom_nodes(self, engine, run):
        engine.plugins.register("double", lambda params, variables: params["value"] * 2)

        class Shout(NodeHandler):
            result_key = "customResult"

            def execute(self, node, variables, ctx):
                return str(variables.get("word", "")).upper()

        engine.register_handler("custom", Shout())
        workflow = build_workflow(
            [trigger(), node("p", "plugin", plugin="double", params={"value": "{{n}}"}), node("c", "custom")],
            [connect("start", "p"), connect("p", "c")],
        )
        context = run(workflow, {"n": 4, "word": "hey"})
        assert context.variables["pluginResult"] == 8
        assert context.variables["customResult"] == "HEY"

    def test_api_node_uses_session(self, graph_manager, config):
        response = Mock(ok=True, status_code=200, headers={"Content-Type": "application/json"})
        response.json.return_value = {"id": 3, "name": "widget"}
        session = Mock()
        session.request.return_value = response

        engine = ExecutionEngine(graph_manager=graph_manager, config=config, http_session=session)
        try:
            workflow = build_workflow(
                [trigger(), node("call", "api", url="https://api.example.test/items/{{item_id}}", method="get")],
                [connect("start", "call")],
            )
            execution_id = engine.execute_workflow(workflow, {"item_id": 3})
            context = engine.wait_for_completion(execution_id, timeout=5)
        finally:
            engine.shutdown()

        assert context.status == ExecutionStatus.COMPLETED
        assert context.variables["apiResult"]["data"] == {"id": 3, "name": "widget"}
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://api.example.test/items/3")

    def test_api_node_error_status_fails(self, graph_manager, config):
        session = Mock()
        session.request.return_value = Mock(ok=False, status_code=500, headers={})
        engine = ExecutionEngine(graph_manager=graph_manager, config=config, http_session=session)
        try:
            workflow = build_workflow(
                [trigger(), node("call", "api", url="https://api.example.test/", maxRetries=0)],
                [connect("start", "call")],
            )
            context = engine.wait_for_completion(engine.execute_workflow(workflow), timeout=5)
        finally:
            engine.shutdown()

        assert context.status == ExecutionStatus.FAILED
        assert "HTTP 500" in context.error


class TestRetriesAndErrors:
    """Test cases for retries, timeouts and error handling policies."""

    def test_retries_exhausted(self, failing_engine, events, run):
        """maxRetries=2 gives three attempts, one node error and a failed execution."""
        workflow = build_workflow(
            [trigger(), node("bad", action="explode", maxRetries=2)],
            [connect("start", "bad")],
        )
        context = run(workflow)

        assert context.status == ExecutionStatus.FAILED
        assert "boom" in context.error
        starts = _events_for(events, context.execution_id, EventType.NODE_START, "bad")
        assert [e.data["attempt"] for e in starts] == [1, 2, 3]
        node_errors = _events_for(events, context.execution_id, EventType.NODE_ERROR, "bad")
        assert len(node_errors) == 1
        assert node_errors[0].data["attempts"] == 3
        assert len(_events_for(events, context.execution_id, EventType.ERROR)) == 1

        result = context.node_results[-1]
        assert result.node_id == "bad"
        assert result.status == ExecutionStatus.FAILED
        assert result.attempts == 3

    def test_retry_then_succeed(self, engine, run):
        calls = []

        def flaky(params, variables):
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("not yet")
            return {"ok": True}

        engine.actions.register("flaky", flaky)
        workflow = build_workflow(
            [trigger(), node("try", action="flaky", maxRetries=3)],
            [connect("start", "try")],
        )
        context = run(workflow)
        assert context.status == ExecutionStatus.COMPLETED
        assert context.node_results[-1].attempts == 3
        assert any("retrying" in entry.message for entry in context.logs)

    def test_options_override_workflow_retries(self, failing_engine, events, run):
        workflow = build_workflow(
            [trigger(), node("bad", action="explode")],
            [connect("start", "bad")],
            maxRetries=5,
        )
        context = run(workflow, options={"maxRetries": 0})
        assert len(_events_for(events, context.execution_id, EventType.NODE_START, "bad")) == 1

    def test_node_timeout(self, events, run):
        """A node exceeding its timeout ends the execution with status timeout."""
        workflow = build_workflow(
            [trigger(), node("slow", "delay", duration=2000, timeoutMs=50, maxRetries=0)],
            [connect("start", "slow")],
        )
        started = time.monotonic()
        context = run(workflow)

        assert time.monotonic() - started < 1.5
        assert context.status == ExecutionStatus.TIMEOUT
        assert context.node_results[-1].status == ExecutionStatus.TIMEOUT
        node_errors = _events_for(events, context.execution_id, EventType.NODE_ERROR, "slow")
        assert node_errors[0].data["timedOut"] is True

    def test_workflow_deadline(self, run):
        workflow = build_workflow(
            [trigger(), node("slow", "delay", duration=2000)],
            [connect("start", "slow")],
            timeoutMs=100,
        )
        context = run(workflow)
        assert context.status == ExecutionStatus.TIMEOUT
        assert "workflow timeout" in context.error

    def test_deadline_error_names_execution(self, engine):
        workflow = build_workflow([trigger()], timeoutMs=100)
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            engine._check_deadline(time.monotonic() - 1, workflow, "exec_late")
        assert exc_info.value.context["execution_id"] == "exec_late"
        assert exc_info.value.context["workflow_id"] == workflow.id

    def test_node_timeout_counts_from_handler_start(self, graph_manager):
        """Concurrent executions never spend a node's timeout budget waiting for a thread."""
        config = get_testing_config().model_copy(update={"worker_threads": 1, "max_concurrent_executions": 3})
        engine = ExecutionEngine(graph_manager=graph_manager, config=config)
        try:
            workflow = build_workflow(
                [trigger(), node("d", "delay", duration=300, timeoutMs=700, maxRetries=0)],
                [connect("start", "d")],
            )
            execution_ids = [engine.execute_workflow(workflow) for _ in range(3)]
            contexts = [engine.wait_for_completion(eid, timeout=10) for eid in execution_ids]
        finally:
            engine.shutdown()

        assert [c.status for c in contexts] == [ExecutionStatus.COMPLETED] * 3
        assert all(c.node_results[-1].attempts == 1 for c in contexts)

    def test_hung_handler_does_not_block_later_nodes(self, graph_manager):
        release = threading.Event()

        class Hang(NodeHandler):
            result_key = "customResult"

            def execute(self, node, variables, ctx):
                release.wait(10)
                return None

        config = get_testing_config().model_copy(update={"worker_threads": 1})
        engine = ExecutionEngine(graph_manager=graph_manager, config=config)
        engine.register_handler("custom", Hang())
        try:
            hung = build_workflow([trigger(), node("h", "custom", timeoutMs=50, maxRetries=0)],
                                  [connect("start", "h")])
            quick = build_workflow([trigger(), node("calc", "transform", expression="1 + 1", timeoutMs=1000)],
                                   [connect("start", "calc")])
            contexts = [engine.wait_for_completion(engine.execute_workflow(w), timeout=5)
                        for w in (hung, hung, quick)]
        finally:
            release.set()
            engine.shutdown()

        assert [c.status for c in contexts] == [ExecutionStatus.TIMEOUT, ExecutionStatus.TIMEOUT,
                                                ExecutionStatus.COMPLETED]
        assert contexts[2].variables["transformResult"] == 2

    def test_stop_policy_halts_downstream(self, failing_engine, run):
        workflow = build_workflow(
            [trigger(), node("bad", action="explode", maxRetries=0), node("after", action="log")],
            [connect("start", "bad"), connect("bad", "after")],
        )
        context = run(workflow)
        assert context.status == ExecutionStatus.FAILED
        assert "after" not in context.node_outputs

    def test_continue_policy(self, failing_engine, run):
        """With errorHandling=continue the failed node's successors are skipped but other paths run."""
        workflow = build_workflow(
            [trigger(), node("bad", action="explode", maxRetries=0),
             node("after_bad", action="log"), node("other", action="log")],
            [connect("start", "bad"), connect("bad", "after_bad"), connect("start", "other")],
            errorHandling="continue",
        )
        context = run(workflow)
        assert context.status == ExecutionStatus.COMPLETED
        assert context.metadata["failedNodes"] == ["bad"]
        assert "after_bad" not in context.node_outputs
        assert "other" in context.node_outputs


class TestRouting:
    """Test cases for branching, guards and joins."""

    @pytest.fixture
    def branching(self):
        return build_workflow(
            [
                trigger(),
                node("check", "condition", condition={"left": "{{score}}", "operator": "greater", "right": "50"}),
                node("pass", action="log", message="pass"),
                node("fail", action="log", message="fail"),
            ],
            [
                connect("start", "check"),
                connect("check", "pass", "conditionResult.result === true", priority=1),
                connect("check", "fail", isDefault=True),
            ],
        )

    @pytest.mark.parametrize("score, taken, skipped", [(80, "pass", "fail"), (10, "fail", "pass")])
    def test_condition_node_selects_one_branch(self, run, branching, score, taken, skipped):
        context = run(branching, {"score": score})
        assert context.status == ExecutionStatus.COMPLETED
        assert context.node_outputs["check"]["result"] is (score > 50)
        assert taken in context.node_outputs
        assert skipped not in context.node_outputs

    def test_condition_without_matching_branch_fails(self, run):
        workflow = build_workflow(
            [trigger(), node("check", "condition", condition="ready"), node("go", action="log")],
            [connect("start", "check"), connect("check", "go", "ready")],
        )
        context = run(workflow, {"ready": False})
        assert context.status == ExecutionStatus.FAILED
        assert "No branch matched" in context.error

    def test_guards_on_ordinary_nodes(self, run):
        """Every connection whose guard holds fires; unguarded connections always fire."""
        workflow = build_workflow(
            [trigger(), node("a", action="log"), node("b", action="log"), node("c", action="log")],
            [connect("start", "a", "mode === 'x'"), connect("start", "b", "mode === 'y'"), connect("start", "c")],
        )
        context = run(workflow, {"mode": "x"})
        assert "a" in context.node_outputs
        assert "b" not in context.node_outputs
        assert "c" in context.node_outputs

    @pytest.mark.parametrize("join, flag, runs", [
        ("all", False, False),
        ("all", True, True),
        ("any", False, True),
    ])
    def test_join_modes(self, engine, events, run, join, flag, runs):
        workflow = build_workflow(
            [trigger(), node("a", action="log"), node("b", action="log"),
             node("merge", action="log", join=join)],
            [connect("start", "a"), connect("start", "b", "flag"), connect("a", "merge"), connect("b", "merge")],
        )
        context = run(workflow, {"flag": flag})
        assert ("merge" in context.node_outputs) is runs
        assert len(_events_for(events, context.execution_id, EventType.NODE_START, "merge")) == (1 if runs else 0)


class TestDryRunAndValidation:

    def test_dry_run_skips_handlers(self, engine, run):
        calls = []
        engine.actions.register("side_effect", lambda params, variables: calls.append(1))
        workflow = build_workflow(
            [trigger(), node("act", action="side_effect")],
            [connect("start", "act")],
        )
        context = run(workflow, options={"dryRun": True})

        assert context.status == ExecutionStatus.COMPLETED
        assert calls == []
        assert context.variables["dryRunPlan"] == ["start", "act"]
        assert all(result.attempts == 0 for result in context.node_results)
        assert context.metadata["dryRun"] is True

    def test_validate_option_rejects_invalid_workflow(self, engine, run):
        invalid = build_workflow([node("a", action="log")])
        with pytest.raises(GraphValidationError):
            engine.execute_workflow(invalid, options={"validate": True})

        context = run(invalid)
        assert context.status == ExecutionStatus.COMPLETED
        assert context.node_results == []

    def test_enforced_validation_can_be_overridden(self, graph_manager):
        config = get_testing_config().model_copy(update={"enforce_validation": True})
        engine = ExecutionEngine(graph_manager=graph_manager, config=config)
        try:
            invalid = build_workflow([node("a", action="log")])
            with pytest.raises(GraphValidationError):
                engine.execute_workflow(invalid)
            execution_id = engine.execute_workflow(invalid, options={"validate": False})
            assert engine.wait_for_completion(execution_id, timeout=5).status == ExecutionStatus.COMPLETED
        finally:
            engine.shutdown()


class TestCancellationAndConcurrency:
    """Test cases for stop_execution and admission control."""

    @pytest.fixture
    def slow_workflow(self):
        return build_workflow(
            [trigger(), node("wait", "delay", duration=5000), node("after", action="log")],
            [connect("start", "wait"), connect("wait", "after")],
        )

    def test_stop_running_execution(self, engine, events, slow_workflow):
        execution_id = engine.execute_workflow(slow_workflow)
        context = engine.get_execution_status(execution_id)
        assert _wait_until(lambda: context.current_node_id == "wait")

        assert engine.stop_execution(execution_id) is True
        assert context.status == ExecutionStatus.CANCELLED

        engine.wait_for_completion(execution_id, timeout=5)
        assert context.status == ExecutionStatus.CANCELLED
        assert "after" not in context.node_outputs
        pauses = _events_for(events, execution_id, EventType.PAUSE)
        assert pauses and pauses[0].data["reason"] == "cancelled"
        assert engine.stop_execution(execution_id) is False
        assert engine.get_active_executions() == []

    def test_stop_unknown_execution(self, engine):
        with pytest.raises(ExecutionNotFoundError):
            engine.stop_execution("missing")
        with pytest.raises(ExecutionNotFoundError):
            engine.get_execution_status("missing")

    def test_stop_queued_execution(self, engine, slow_workflow):
        first = engine.execute_workflow(slow_workflow, options={"maxConcurrency": 1})
        assert _wait_until(lambda: engine.get_execution_status(first).status == ExecutionStatus.RUNNING)
        second = engine.execute_workflow(slow_workflow, options={"maxConcurrency": 1})
        assert _wait_until(lambda: engine.get_execution_queue_status()["queued_executions"] == 1)

        assert engine.stop_execution(second) is True
        queued = engine.wait_for_completion(second, timeout=5)
        assert queued.status == ExecutionStatus.CANCELLED
        assert queued.node_results == []

        engine.stop_execution(first)
        engine.wait_for_completion(first, timeout=5)
        assert engine.get_execution_queue_status()["running_executions"] == 0

    @pytest.mark.parametrize("limit, expected_max", [(1, 1), (None, 2)])
    def test_admission_bounds_running_executions(self, engine, limit, expected_max):
        lock = threading.Lock()
        state = {"running": 0, "max": 0}

        def track(params, variables):
            with lock:
                state["running"] += 1
                state["max"] = max(state["max"], state["running"])
            time.sleep(0.1)
            with lock:
                state["running"] -= 1

        engine.actions.register("track", track)
        workflow = build_workflow([trigger(), node("t", action="track")], [connect("start", "t")])
        options = {"maxConcurrency": limit} if limit else None
        execution_ids = [engine.execute_workflow(workflow, options=options) for _ in range(4)]
        contexts = [engine.wait_for_completion(eid, timeout=10) for eid in execution_ids]

        assert all(c.status == ExecutionStatus.COMPLETED for c in contexts)
        assert 1 <= state["max"] <= expected_max

    def test_shutdown_rejects_new_work(self, graph_manager, config):
        engine = ExecutionEngine(graph_manager=graph_manager, config=config)
        engine.shutdown()
        with pytest.raises(ExecutionEngineError):
            engine.execute_workflow(build_workflow([trigger()]))


class TestHistory:
    """Test cases for execution history and statistics."""

    def test_history_statistics_and_clear(self, failing_engine, run):
        good = build_workflow([trigger()], name="Good")
        bad = build_workflow([trigger(), node("bad", action="explode", maxRetries=0)], [connect("start", "bad")],
                             name="Bad")
        ok_context = run(good, {"x": 1})
        failed_context = run(bad)

        history = failing_engine.get_execution_history(good.id)
        assert len(history) == 1
        assert history[0].execution_id == ok_context.execution_id
        assert history[0].status == ExecutionStatus.COMPLETED
        assert history[0].input == {"x": 1}
        assert history[0].trigger == {"type": "manual"}

        failed = failing_engine.get_execution_history(filters={"status": ["failed"]})
        assert [h.execution_id for h in failed] == [failed_context.execution_id]
        assert failed[0].error

        statistics = failing_engine.get_execution_statistics()
        assert statistics["total_executions"] == 2
        assert statistics["by_status"]["completed"] == 1
        assert statistics["by_status"]["failed"] == 1
        assert statistics["success_rate"] == 0.5

        assert failing_engine.clear_execution_history() == 2
        assert failing_engine.get_execution_history() == []
        with pytest.raises(ExecutionNotFoundError):
            failing_engine.get_execution_status(ok_context.execution_id)

    def test_finished_contexts_are_bounded(self, graph_manager):
        """Only the newest history_limit finished executions stay queryable by id."""
        config = get_testing_config().model_copy(update={"history_limit": 2})
        engine = ExecutionEngine(graph_manager=graph_manager, config=config)
        try:
            workflow = build_workflow([trigger()])
            execution_ids = []
            for _ in range(5):
                execution_ids.append(engine.execute_workflow(workflow))
                engine.wait_for_completion(execution_ids[-1], timeout=5)
            assert _wait_until(lambda: len(engine.get_execution_history()) == 2)

            for execution_id in execution_ids[:3]:
                with pytest.raises(ExecutionNotFoundError):
                    engine.get_execution_status(execution_id)
            for execution_id in execution_ids[3:]:
                assert engine.get_execution_status(execution_id).status == ExecutionStatus.COMPLETED
        finally:
            engine.shutdown()
