import unittest
from datetime import datetime, timedelta
from unittest import mock

import httpx
from sqlalchemy import delete, select, func

from database.models.flow import FlowEdge, FlowExecution, FlowNode
from services.execution_store import StaleExecutionError
from services.flow_engine import FlowConfigurationError, NodeDispatchError
from services.node_handlers import NodeDispatcher
from services.whatsapp_service import InboundMessage
from tests.support import DatabaseTestCase, text_message

CUSTOMER = "2348012345678"

QUIZ_NODES = [
    ("t", "trigger", {}),
    ("ask", "sendText", {"message": "What is 6 x 7, {{customer_name}}?"}),
    ("wait", "waitForReply", {"variableName": "quiz.answer"}),
    ("check", "condition", {
        "conditions": [{"variable": "quiz.answer", "operator": "equals", "value": "42", "outputHandle": "right"}],
        "defaultHandle": "wrong",
    }),
    ("yes", "sendText", {"message": "Correct: {{quiz.answer}}"}),
    ("no", "sendText", {"message": "Not quite"}),
]
QUIZ_EDGES = [
    ("t", "ask"),
    ("ask", "wait"),
    ("wait", "check"),
    ("check", "yes", "right"),
    ("check", "no", "wrong"),
]


class TestFlowLifecycle(DatabaseTestCase):

    async def active_count(self):
        async with self.session_factory() as session:
            stmt = select(func.count()).select_from(FlowExecution).where(
                FlowExecution.customer_id == CUSTOMER,
                FlowExecution.status.in_(("running", "waiting")),
            )
            return (await session.execute(stmt)).scalar_one()

    async def test_start_then_resume_binds_reply(self):
        await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("quiz"), {"customer_name": "Ada"})
        self.assertEqual((outcome.action, outcome.status), ("started", "waiting"))
        self.assertEqual(self.gateway.texts(), ["What is 6 x 7, Ada?"])

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("42", "wamid.in.2"))
        self.assertEqual((outcome.action, outcome.status), ("resumed", "completed"))
        # The wait node is not dispatched again
        self.assertEqual(self.gateway.texts(), ["What is 6 x 7, Ada?", "Correct: 42"])

        execution = await self.execution_store.get(outcome.execution_id)
        self.assertEqual(execution.variables["quiz"], {"answer": "42"})
        self.assertEqual(execution.variables["last_message"], "42")
        self.assertEqual(execution.variables["customer_name"], "Ada")
        self.assertIsNotNone(execution.completed_at)

    async def test_second_start_resumes_instead_of_duplicating(self):
        await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")

        first = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("quiz"))
        second = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("quiz", "wamid.in.2"))

        self.assertEqual(second.action, "resumed")
        self.assertEqual(second.execution_id, first.execution_id)
        self.assertEqual(await self.active_count(), 0)
        self.assertEqual(self.gateway.texts()[-1], "Not quite")

    async def test_store_rejects_a_second_active_execution(self):
        flow_id = await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")
        trigger_id = self.node_id(flow_id, "t")

        first = await self.execution_store.create(flow_id, CUSTOMER, self.channel["id"], trigger_id, {})
        second = await self.execution_store.create(flow_id, CUSTOMER, self.channel["id"], trigger_id, {})

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(await self.active_count(), 1)

    async def test_start_that_loses_the_race_resumes_the_winner(self):
        flow_id = await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")
        await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("quiz"))

        # A second invocation that read "no active execution" before the first one committed
        outcome = await self.flow_engine.start(flow_id, self.channel, CUSTOMER, text_message("42", "wamid.in.2"))

        self.assertEqual((outcome.action, outcome.status), ("resumed", "completed"))
        self.assertEqual(self.gateway.texts()[-1], "Correct: 42")

    async def test_no_matching_flow(self):
        await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")
        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hello"))
        self.assertEqual(outcome.action, "no_match")
        self.assertEqual(await self.active_count(), 0)

    async def test_unpublished_flows_are_not_matched(self):
        await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_type="any_message", published=False)
        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hello"))
        self.assertEqual(outcome.action, "no_match")

    async def test_highest_priority_flow_wins(self):
        await self.add_flow([("t", "trigger", {}), ("s", "sendText", {"message": "fallback"})], [("t", "s")],
                            trigger_type="any_message", priority=5)
        await self.add_flow([("t", "trigger", {}), ("s", "sendText", {"message": "greeting"})], [("t", "s")],
                            trigger_value="hi", priority=10)

        await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi there"))
        await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("anything else", "wamid.in.2"))
        self.assertEqual(self.gateway.texts(), ["greeting", "fallback"])

    async def test_dead_end_completes(self):
        nodes = [
            ("t", "trigger", {}),
            ("check", "condition", {"conditions": [], "defaultHandle": "nowhere"}),
        ]
        await self.add_flow(nodes, [("t", "check")])

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual(outcome.status, "completed")
        execution = await self.execution_store.get(outcome.execution_id)
        self.assertTrue(execution.current_node_id.endswith(":check"))

    async def test_trigger_without_edges_completes_immediately(self):
        await self.add_flow([("t", "trigger", {})], [])
        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual((outcome.action, outcome.status), ("started", "completed"))

    async def test_end_node_stops_the_walk(self):
        nodes = [
            ("t", "trigger", {}),
            ("bye", "end", {}),
            ("never", "sendText", {"message": "unreachable"}),
        ]
        # An end node with an edge still stops
        await self.add_flow(nodes, [("t", "bye"), ("bye", "never")])
        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual(outcome.status, "completed")
        self.assertEqual(self.gateway.sent, [])

    async def test_loop_with_self_edge_is_bounded(self):
        nodes = [
            ("t", "trigger", {}),
            ("loop", "loop", {"maxIterations": 3}),
            ("say", "sendText", {"message": "pass {{loop_index}}"}),
            ("done", "sendText", {"message": "done"}),
        ]
        edges = [("t", "loop"), ("loop", "say", "loop"), ("say", "loop"), ("loop", "done", "complete")]
        await self.add_flow(nodes, edges)

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual(outcome.status, "completed")
        self.assertEqual(self.gateway.texts(), ["pass 1", "pass 2", "done"])
        execution = await self.execution_store.get(outcome.execution_id)
        self.assertFalse(any(key.startswith("_loop_") for key in execution.variables))

    async def test_loop_self_edge_completes_on_third_visit(self):
        nodes = [("t", "trigger", {}), ("loop", "loop", {"maxIterations": 3}), ("done", "sendText", {"message": "done"})]
        await self.add_flow(nodes, [("t", "loop"), ("loop", "loop", "loop"), ("loop", "done", "complete")])

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual(self.gateway.texts(), ["done"])

        logs = await self.execution_store.list_logs(outcome.execution_id)
        handles = [log.result_data.get("output_handle") for log in logs if log.node_type == "loop"]
        self.assertEqual(sorted(handles), ["complete", "loop", "loop"])

    async def test_runaway_cycle_is_cut_off(self):
        nodes = [("t", "trigger", {}), ("a", "setVariable", {}), ("b", "setVariable", {})]
        await self.add_flow(nodes, [("t", "a"), ("a", "b"), ("b", "a")])
        flow_engine = self.build_flow_engine(max_steps=20)

        with self.assertLogs("services.flow_engine", level="WARNING"):
            outcome = await flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual(outcome.status, "completed")

        logs = await self.execution_store.list_logs(outcome.execution_id)
        self.assertIn({"aborted": "max_steps"}, [log.result_data for log in logs])

    async def test_unknown_node_is_logged_and_skipped(self):
        nodes = [
            ("t", "trigger", {}),
            ("stamp", "sendStampCard", {"stamps": 3}),
            ("after", "sendText", {"message": "after"}),
        ]
        await self.add_flow(nodes, [("t", "stamp"), ("stamp", "after")])

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual(outcome.status, "completed")
        self.assertEqual(self.gateway.texts(), ["after"])

        logs = await self.execution_store.list_logs(outcome.execution_id)
        skipped = [log for log in logs if log.node_type == "sendStampCard"]
        self.assertEqual(skipped[0].result_data["skipped"], "unknown_node_type")

    async def test_api_failure_lets_the_walk_continue(self):
        nodes = [
            ("t", "trigger", {}),
            ("call", "apiCall", {"url": "http://localhost:1/unreachable"}),
            ("check", "condition", {
                "conditions": [{"variable": "api_success", "operator": "equals", "value": "false", "outputHandle": "failed"}],
            }),
            ("sorry", "sendText", {"message": "Service unavailable"}),
        ]
        await self.add_flow(nodes, [("t", "call"), ("call", "check"), ("check", "sorry", "failed")])

        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        flow_engine = self.build_flow_engine(
            dispatcher=NodeDispatcher(gateway=self.gateway, http_transport=httpx.MockTransport(unreachable)),
        )
        outcome = await flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(self.gateway.texts(), ["Service unavailable"])

    async def test_running_execution_restarts_past_the_trigger(self):
        flow_id = await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")
        # Left behind by an invocation that died before its first checkpoint
        stranded = await self.execution_store.create(flow_id, CUSTOMER, self.channel["id"], self.node_id(flow_id, "t"), {})

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("x"))

        self.assertEqual((outcome.action, outcome.execution_id, outcome.status), ("resumed", stranded.id, "waiting"))
        self.assertEqual(self.gateway.texts(), ["What is 6 x 7, ?"])
        self.assertEqual(await self.active_count(), 1)

    async def test_resume_when_waiting_node_was_deleted(self):
        flow_id = await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")
        await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("quiz"))

        wait_id = self.node_id(flow_id, "wait")
        async with self.session_factory() as session:
            await session.execute(delete(FlowEdge).where(
                (FlowEdge.source_node_id == wait_id) | (FlowEdge.target_node_id == wait_id)))
            await session.execute(delete(FlowNode).where(FlowNode.id == wait_id))
            await session.commit()

        with self.assertLogs("services.flow_engine", level="WARNING"):
            outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("42", "wamid.in.2"))

        self.assertEqual((outcome.action, outcome.status), ("resumed", "completed"))
        self.assertEqual(self.gateway.texts(), ["What is 6 x 7, ?"])
        self.assertEqual(await self.active_count(), 0)

    async def test_button_id_survives_a_later_text_reply(self):
        nodes = [
            ("t", "trigger", {}),
            ("confirm", "waitForReply", {}),
            ("note", "waitForReply", {}),
            ("echo", "sendText", {"message": "button={{last_button_id}} text={{last_message}}"}),
        ]
        await self.add_flow(nodes, [("t", "confirm"), ("confirm", "note"), ("note", "echo")])

        await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        button = InboundMessage(type="interactive", text="Yes", button_id="yes", message_id="wamid.in.2")
        await self.flow_engine.handle_inbound(self.channel, CUSTOMER, button)
        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("all good", "wamid.in.3"))

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(self.gateway.texts(), ["button=yes text=all good"])

    async def test_flow_without_trigger_creates_nothing(self):
        flow_id = await self.add_flow([("s", "sendText", {"message": "hi"})], [])
        with self.assertRaises(FlowConfigurationError):
            await self.flow_engine.start(flow_id, self.channel, CUSTOMER, text_message("hi"))
        self.assertEqual(await self.active_count(), 0)

    async def test_missing_flow_is_a_configuration_error(self):
        with self.assertRaises(FlowConfigurationError):
            await self.flow_engine.start("no-such-flow", self.channel, CUSTOMER, text_message("hi"))


class TestCheckpoints(DatabaseTestCase):

    async def start_quiz(self):
        await self.add_flow(QUIZ_NODES, QUIZ_EDGES, trigger_value="quiz")
        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("quiz"))
        return await self.execution_store.get(outcome.execution_id)

    async def test_dispatch_error_leaves_state_untouched(self):
        waiting = await self.start_quiz()

        class Boom(NodeDispatcher):
            async def dispatch(self, node, ctx):
                ctx.variables["half_written"] = True
                raise RuntimeError("handler exploded")

        flow_engine = self.build_flow_engine(dispatcher=Boom(gateway=self.gateway))
        with self.assertRaises(NodeDispatchError) as caught:
            await flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("42", "wamid.in.2"))
        self.assertTrue(caught.exception.node_id.endswith(":check"))

        after = await self.execution_store.get(waiting.id)
        self.assertEqual(after.status, "waiting")
        self.assertEqual(after.version, waiting.version)
        self.assertEqual(after.current_node_id, waiting.current_node_id)
        self.assertNotIn("half_written", after.variables)
        self.assertNotIn("quiz", after.variables)

        logs = await self.execution_store.list_logs(waiting.id)
        self.assertIn({"error": "handler exploded"}, [log.result_data for log in logs])

    async def test_stale_version_is_a_quiet_conflict(self):
        waiting = await self.start_quiz()

        # Someone else moves the execution on between our read and our write
        original_find = self.execution_store.find_active

        async def find_then_lose_race(customer_id, channel_id):
            execution = await original_find(customer_id, channel_id)
            concurrent = await self.execution_store.get(execution.id)
            await self.execution_store.update(concurrent, {"variables": {"other": "writer"}})
            return execution

        with mock.patch.object(self.execution_store, "find_active", find_then_lose_race):
            outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("42", "wamid.in.2"))

        self.assertEqual(outcome.action, "conflict")
        after = await self.execution_store.get(waiting.id)
        self.assertEqual(after.variables, {"other": "writer"})
        self.assertEqual(after.status, "waiting")

    async def test_update_raises_on_stale_version(self):
        waiting = await self.start_quiz()
        copy_a = await self.execution_store.get(waiting.id)
        copy_b = await self.execution_store.get(waiting.id)

        await self.execution_store.update(copy_a, {"variables": {"a": 1}})
        with self.assertRaises(StaleExecutionError):
            await self.execution_store.update(copy_b, {"variables": {"b": 2}})
        self.assertEqual(copy_a.version, waiting.version + 1)


class TestTimers(DatabaseTestCase):

    NODES = [
        ("t", "trigger", {}),
        ("first", "sendText", {"message": "one moment"}),
        ("pause", "delay", {"delaySeconds": 30}),
        ("second", "sendText", {"message": "thanks for waiting"}),
    ]
    EDGES = [("t", "first"), ("first", "pause"), ("pause", "second")]

    async def test_delay_parks_on_a_timer(self):
        await self.add_flow(self.NODES, self.EDGES)
        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))

        self.assertEqual(outcome.status, "waiting")
        execution = await self.execution_store.get(outcome.execution_id)
        self.assertEqual(execution.waiting_for, "timer")
        self.assertIsNotNone(execution.resume_at)
        self.assertEqual(len(self.scheduler.calls), 1)
        execution_id, delay, version = self.scheduler.calls[0]
        self.assertEqual((execution_id, version), (execution.id, execution.version))
        self.assertAlmostEqual(delay, 30, delta=2)
        self.assertEqual(self.gateway.texts(), ["one moment"])

    async def test_messages_during_a_timer_do_not_advance(self):
        await self.add_flow(self.NODES, self.EDGES)
        started = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))

        outcome = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hello?", "wamid.in.2"))
        self.assertEqual((outcome.action, outcome.status), ("ignored", "waiting"))
        self.assertEqual(self.gateway.texts(), ["one moment"])

        execution = await self.execution_store.get(started.execution_id)
        self.assertEqual(execution.variables["last_message"], "hello?")

    async def test_timer_resume_continues_the_walk(self):
        await self.add_flow(self.NODES, self.EDGES)
        started = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        _, _, version = self.scheduler.calls[0]

        later = self.build_flow_engine(clock=lambda: datetime.utcnow() + timedelta(minutes=5))
        outcome = await later.resume_timer(started.execution_id, version)

        self.assertEqual((outcome.action, outcome.status), ("resumed", "completed"))
        self.assertEqual(self.gateway.texts(), ["one moment", "thanks for waiting"])

    async def test_timer_fires_after_a_message_during_the_wait(self):
        await self.add_flow(self.NODES, self.EDGES)
        started = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        _, _, first_version = self.scheduler.calls[0]

        await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hello?", "wamid.in.2"))
        self.assertEqual(len(self.scheduler.calls), 2)
        execution_id, delay, version = self.scheduler.calls[1]
        self.assertEqual(execution_id, started.execution_id)
        self.assertGreater(version, first_version)
        self.assertAlmostEqual(delay, 30, delta=2)

        later = self.build_flow_engine(clock=lambda: datetime.utcnow() + timedelta(minutes=5))
        dropped = await later.resume_timer(started.execution_id, first_version)
        self.assertEqual(dropped.action, "ignored")

        outcome = await later.resume_timer(started.execution_id, version)
        self.assertEqual((outcome.action, outcome.status), ("resumed", "completed"))
        self.assertEqual(self.gateway.texts(), ["one moment", "thanks for waiting"])

    async def test_early_timer_is_rescheduled(self):
        await self.add_flow(self.NODES, self.EDGES)
        started = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        _, _, version = self.scheduler.calls[0]

        outcome = await self.flow_engine.resume_timer(started.execution_id, version)

        self.assertEqual(outcome.action, "ignored")
        self.assertEqual(len(self.scheduler.calls), 2)
        self.assertEqual(self.gateway.texts(), ["one moment"])

    async def test_stale_timer_is_dropped(self):
        await self.add_flow(self.NODES, self.EDGES)
        started = await self.flow_engine.handle_inbound(self.channel, CUSTOMER, text_message("hi"))
        _, _, version = self.scheduler.calls[0]

        later = self.build_flow_engine(clock=lambda: datetime.utcnow() + timedelta(minutes=5))
        outcome = await later.resume_timer(started.execution_id, version - 1)

        self.assertEqual(outcome.action, "ignored")
        self.assertEqual(self.gateway.texts(), ["one moment"])


if __name__ == '__main__':
    unittest.main()
