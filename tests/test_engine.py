"""Tests for the Execution Engine and rule registry."""

import asyncio
import random
import time

import pytest

from hook_kernel.engine.executor import ExecutionEngine
from hook_kernel.engine.registry import BaseRule, RuleRegistry
from hook_kernel.learning.store import LearningStore
from hook_kernel.models.action import Action, RuleResult, Verdict
from hook_kernel.models.config import EngineConfig, FailurePolicy, TunerConfig
from hook_kernel.models.execution import ExecutionOutcome
from hook_kernel.models.patterns import PatternType
from hook_kernel.tuning.ab_testing import ABTestManager
from hook_kernel.tuning.parameters import ParameterStore


def _make_action(action_id: str = "act_1", category: str = "write", content: str = "print('hi')") -> Action:
    return Action(id=action_id, target="src/app.py", payload={"content": content}, category=category)


def _verdict_rule(verdict: Verdict, message: str = None):
    def evaluate(action, parameters):
        return RuleResult(outcome=verdict, message=message)
    return evaluate


class SecretRule(BaseRule):
    name = "no-secrets"
    category = "write"
    priority = 10
    default_parameters = {"enforcement_strictness": "standard"}

    def evaluate(self, action, parameters):
        if "API_KEY" in action.payload.get("content", ""):
            return RuleResult(
                outcome=Verdict.BLOCK,
                message="Secret detected",
                pattern_key="api_key",
                pattern_type=PatternType.CONTENT.value,
            )
        return RuleResult(outcome=Verdict.ALLOW, pattern_key="api_key", pattern_type=PatternType.CONTENT.value)


class TestRuleRegistry:
    def setup_method(self):
        self.registry = RuleRegistry()

    def test_rules_for_category(self):
        self.registry.register_function("w", _verdict_rule(Verdict.ALLOW), category="write", priority=20)
        self.registry.register_function("b", _verdict_rule(Verdict.ALLOW), category="bash")
        self.registry.register_function("any", _verdict_rule(Verdict.ALLOW), category="*", priority=5)
        assert [r.name for r in self.registry.rules_for("write")] == ["any", "w"]
        assert [r.name for r in self.registry.rules_for("bash")] == ["any", "b"]

    def test_duplicate_name_rejected(self):
        self.registry.register(SecretRule())
        with pytest.raises(ValueError):
            self.registry.register(SecretRule())

    def test_object_without_evaluate_rejected(self):
        class NotARule:
            name = "x"
            category = "*"
            priority = 1

        with pytest.raises(TypeError):
            self.registry.register(NotARule())

    def test_entries(self):
        self.registry.register_function("a", _verdict_rule(Verdict.ALLOW), depends_on=["b"], description="A rule")
        entry = self.registry.entries()[0]
        assert entry.depends_on == ["b"]
        assert entry.description == "A rule"

    def test_discover_with_no_plugins(self):
        assert self.registry.discover(group="hook_kernel.tests.none") == []


class TestEngineAggregation:
    def setup_method(self):
        self.store = LearningStore(db_path=":memory:")
        self.params = ParameterStore(self.store)
        self.registry = RuleRegistry()
        self.engine = ExecutionEngine(
            self.registry, self.params, store=self.store,
            config=EngineConfig(default_timeout_ms=1000),
        )

    def teardown_method(self):
        self.engine.shutdown()

    def test_no_rules_allows(self):
        decision = self.engine.submit(_make_action())
        assert decision.outcome == Verdict.ALLOW
        assert decision.rule_results == []

    def test_any_block_blocks(self):
        self.registry.register_function("allow", _verdict_rule(Verdict.ALLOW), priority=1)
        self.registry.register_function("warn", _verdict_rule(Verdict.WARN, "careful"), priority=2)
        self.registry.register_function("block", _verdict_rule(Verdict.BLOCK, "nope"), priority=3)
        decision = self.engine.submit(_make_action())
        assert decision.outcome == Verdict.BLOCK
        assert decision.blocked
        assert decision.messages == ["careful", "nope"]

    def test_block_wins_regardless_of_completion_order(self):
        def slow_block(action, parameters):
            time.sleep(0.05)
            return RuleResult(outcome=Verdict.BLOCK)

        self.registry.register_function("slow-block", slow_block, priority=1)
        self.registry.register_function("fast-allow", _verdict_rule(Verdict.ALLOW), priority=2)
        assert self.engine.submit(_make_action()).outcome == Verdict.BLOCK

    def test_warn_without_block(self):
        self.registry.register_function("warn", _verdict_rule(Verdict.WARN))
        self.registry.register_function("allow", _verdict_rule(Verdict.ALLOW))
        decision = self.engine.submit(_make_action())
        assert decision.outcome == Verdict.WARN
        assert decision.messages == ["warn: warn"]

    def test_messages_in_priority_order(self):
        self.registry.register_function("late", _verdict_rule(Verdict.WARN, "second"), priority=20)
        self.registry.register_function("early", _verdict_rule(Verdict.WARN, "first"), priority=10)
        assert self.engine.submit(_make_action()).messages == ["first", "second"]

    def test_only_applicable_rules_run(self):
        self.registry.register_function("bash-only", _verdict_rule(Verdict.BLOCK), category="bash")
        self.registry.register_function("all", _verdict_rule(Verdict.ALLOW), category="*")
        decision = self.engine.submit(_make_action(category="write"))
        assert decision.outcome == Verdict.ALLOW
        assert [r.rule for r in decision.rule_results] == ["all"]

    def test_dict_and_string_results_coerced(self):
        self.registry.register_function("dict", lambda a, p: {"outcome": "warn", "message": "from dict"})
        self.registry.register_function("str", lambda a, p: "allow")
        decision = self.engine.submit(_make_action())
        assert decision.outcome == Verdict.WARN
        assert all(r.error is None for r in decision.rule_results)

    def test_async_rule(self):
        async def evaluate(action, parameters):
            await asyncio.sleep(0.01)
            return RuleResult(outcome=Verdict.BLOCK, message="async block")

        self.registry.register_function("async", evaluate)
        decision = self.engine.submit(_make_action())
        assert decision.outcome == Verdict.BLOCK

    def test_rules_run_concurrently(self):
        def slow(action, parameters):
            time.sleep(0.3)
            return RuleResult(outcome=Verdict.ALLOW)

        self.registry.register_function("slow-1", slow)
        self.registry.register_function("slow-2", slow)
        started = time.monotonic()
        self.engine.submit(_make_action())
        assert time.monotonic() - started < 0.55

    def test_rule_receives_its_parameters(self):
        seen = []

        def evaluate(action, parameters):
            seen.append(dict(parameters))
            return RuleResult(outcome=Verdict.ALLOW)

        self.registry.register_function("r", evaluate, default_parameters={"max_lines": 200})
        self.params.register_defaults("r", {"max_lines": 500})
        self.engine.submit(_make_action())
        assert seen == [{"timeout": 1000.0, "max_lines": 500}]


class TestEngineFailures:
    def setup_method(self):
        self.store = LearningStore(db_path=":memory:")
        self.params = ParameterStore(self.store)
        self.registry = RuleRegistry()

    def _engine(self, **config) -> ExecutionEngine:
        self.engine = ExecutionEngine(
            self.registry, self.params, store=self.store, config=EngineConfig(**config)
        )
        return self.engine

    def teardown_method(self):
        self.engine.shutdown()

    def test_sync_timeout_fails_open_within_bound(self, caplog):
        def hang(action, parameters):
            time.sleep(1.0)
            return RuleResult(outcome=Verdict.BLOCK)

        self.registry.register_function("hang", hang, default_parameters={"timeout": 100})
        self.registry.register_function("ok", _verdict_rule(Verdict.ALLOW))
        engine = self._engine()

        started = time.monotonic()
        with caplog.at_level("WARNING"):
            decision = engine.submit(_make_action())
        elapsed = time.monotonic() - started

        assert elapsed < 0.1 + 0.4
        assert decision.outcome == Verdict.ALLOW
        report = next(r for r in decision.rule_results if r.rule == "hang")
        assert report.timed_out
        assert report.error.startswith("RuleTimeout")
        assert any("timed out" in m for m in decision.messages)
        assert "RuleTimeout: rule hang" in caplog.text

        engine.flush()
        records = {r.rule: r for r in self.store.executions_for_action("act_1")}
        assert records["hang"].timed_out
        assert records["hang"].outcome == ExecutionOutcome.ALLOW
        assert records["ok"].outcome == ExecutionOutcome.ALLOW

    def test_async_timeout_fail_closed(self):
        async def hang(action, parameters):
            await asyncio.sleep(5)

        self.registry.register_function("hang", hang, default_parameters={"timeout": 50})
        engine = self._engine(timeout_policy=FailurePolicy.FAIL_CLOSED)
        started = time.monotonic()
        decision = engine.submit(_make_action())
        assert time.monotonic() - started < 0.5
        assert decision.outcome == Verdict.BLOCK

    def test_rule_error_fails_open(self, caplog):
        def broken(action, parameters):
            raise ValueError("regex exploded")

        self.registry.register_function("broken", broken)
        engine = self._engine()
        with caplog.at_level("ERROR"):
            decision = engine.submit(_make_action())

        assert decision.outcome == Verdict.ALLOW
        report = decision.rule_results[0]
        assert "ValueError: regex exploded" in report.error
        assert "broken" in caplog.text and "act_1" in caplog.text

        engine.flush()
        records = self.store.executions_for_action("act_1")
        assert records[0].outcome == ExecutionOutcome.ERROR

    def test_rule_error_fail_closed(self):
        def broken(action, parameters):
            raise RuntimeError("down")

        self.registry.register_function("broken", broken)
        engine = self._engine(error_policy=FailurePolicy.FAIL_CLOSED)
        assert engine.submit(_make_action()).outcome == Verdict.BLOCK

    def test_invalid_return_value_is_an_error(self):
        self.registry.register_function("weird", lambda a, p: 42)
        engine = self._engine()
        decision = engine.submit(_make_action())
        assert decision.outcome == Verdict.ALLOW
        assert "expected a RuleResult" in decision.rule_results[0].error

    def test_one_record_per_applicable_rule(self):
        def broken(action, parameters):
            raise ValueError("x")

        self.registry.register_function("ok", _verdict_rule(Verdict.ALLOW))
        self.registry.register_function("block", _verdict_rule(Verdict.BLOCK))
        self.registry.register_function("broken", broken)
        self.registry.register_function("other-category", _verdict_rule(Verdict.BLOCK), category="bash")
        engine = self._engine()

        for i in range(5):
            engine.submit(_make_action(action_id=f"act_{i}"))
        assert engine.flush()
        for i in range(5):
            records = self.store.executions_for_action(f"act_{i}")
            assert sorted(r.rule for r in records) == ["block", "broken", "ok"]
        assert self.store.execution_count() == 15

    def test_cancellation_writes_no_records(self):
        async def slow(action, parameters):
            await asyncio.sleep(1.0)
            return RuleResult(outcome=Verdict.ALLOW)

        self.registry.register_function("slow", slow)
        self.registry.register_function("fast", _verdict_rule(Verdict.ALLOW))
        engine = self._engine()

        async def scenario():
            task = asyncio.ensure_future(engine.submit_async(_make_action()))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        engine.flush()
        assert self.store.executions_for_action("act_1") == []
        assert engine.recent_decision("act_1") is None

    def test_rule_raising_timeout_error_is_a_rule_error(self):
        def flaky(action, parameters):
            raise TimeoutError("socket read")

        self.registry.register_function("flaky", flaky)
        engine = self._engine()
        decision = engine.submit(_make_action())

        report = decision.rule_results[0]
        assert not report.timed_out
        assert "TimeoutError: socket read" in report.error
        assert not any("timed out" in m for m in decision.messages)

        engine.flush()
        records = self.store.executions_for_action("act_1")
        assert records[0].outcome == ExecutionOutcome.ERROR
        assert not records[0].timed_out

    def test_rule_raising_cancelled_error_does_not_cancel_submission(self):
        async def cancelled(action, parameters):
            raise asyncio.CancelledError()

        self.registry.register_function("cancelled", cancelled)
        self.registry.register_function("ok", _verdict_rule(Verdict.ALLOW))
        engine = self._engine()
        decision = engine.submit(_make_action())

        assert decision.outcome == Verdict.ALLOW
        report = next(r for r in decision.rule_results if r.rule == "cancelled")
        assert "CancelledError" in report.error
        assert not report.timed_out

        engine.flush()
        records = {r.rule: r for r in self.store.executions_for_action("act_1")}
        assert records["cancelled"].outcome == ExecutionOutcome.ERROR
        assert records["ok"].outcome == ExecutionOutcome.ALLOW


class TestPatternFeedback:
    def setup_method(self):
        self.store = LearningStore(db_path=":memory:")
        self.params = ParameterStore(self.store)
        self.registry = RuleRegistry()
        self.registry.register(SecretRule())
        self.engine = ExecutionEngine(
            self.registry, self.params, store=self.store,
            config=EngineConfig(feedback_cache_size=2),
        )

    def teardown_method(self):
        self.engine.shutdown()

    def _counts(self):
        stat = self.store.pattern_effectiveness("no-secrets")[0]
        return stat.tp, stat.fp, stat.tn, stat.fn

    def test_false_positive(self):
        self.engine.submit(_make_action("a1", content="API_KEY=test"))
        assert self.engine.report_feedback("a1", should_block=False)
        assert self._counts() == (0, 1, 0, 0)

    def test_confusion_matrix(self):
        self.engine.submit(_make_action("a1", content="API_KEY=1"))
        self.engine.report_feedback("a1", should_block=True)
        self.engine.submit(_make_action("a2", content="clean"))
        self.engine.report_feedback("a2", should_block=False)
        self.engine.report_feedback("a2", should_block=True)
        assert self._counts() == (1, 0, 1, 1)

    def test_unknown_and_evicted_actions(self):
        assert self.engine.report_feedback("missing", should_block=True) is False
        for action_id in ("a1", "a2", "a3"):
            self.engine.submit(_make_action(action_id))
        assert self.engine.report_feedback("a1", should_block=False) is False
        assert self.engine.report_feedback("a3", should_block=False) is True


class TestEngineABRouting:
    def setup_method(self):
        self.store = LearningStore(db_path=":memory:")
        self.params = ParameterStore(self.store)
        self.registry = RuleRegistry()
        self.seen = []

        def evaluate(action, parameters):
            self.seen.append(parameters["max_lines"])
            return RuleResult(outcome=Verdict.ALLOW)

        self.registry.register_function("r", evaluate, default_parameters={"max_lines": 100})
        self.ab_tests = ABTestManager(TunerConfig(), rng=random.Random(7))
        self.engine = ExecutionEngine(
            self.registry, self.params, store=self.store, ab_tests=self.ab_tests,
        )
        self.engine.seed_parameters()

    def teardown_method(self):
        self.engine.shutdown()

    def test_outcomes_credited_to_drawn_arm(self):
        test = self.ab_tests.start("r", "max_lines", control_value=100, variant_value=200)
        for i in range(40):
            self.engine.submit(_make_action(f"a{i}"))

        assert set(self.seen) == {100, 200}
        assert test.control.executions == self.seen.count(100)
        assert test.variant.executions == self.seen.count(200)
        assert test.control.successes + test.variant.successes == 40

    def test_unusable_timeout_arm_falls_back_to_default(self, caplog):
        self.ab_tests.start(
            "r", "timeout", control_value=3000.0, variant_value="fast", sample_ratio=0.99,
        )
        with caplog.at_level("WARNING"):
            decisions = [self.engine.submit(_make_action(f"a{i}")) for i in range(5)]

        assert all(d.outcome == Verdict.ALLOW for d in decisions)
        assert all(d.rule_results[0].error is None for d in decisions)
        assert "unusable timeout 'fast'" in caplog.text

        self.engine.flush()
        assert self.store.execution_count() == 5
