"""
Unit Tests for the workflow analyzer.

Test coverage for:
- Sequence detectors (loops, regression, ordering, TDD, failures, chain)
- Time-based detectors evaluated at an injected `now`
- Health aggregation
- Determinism and baseline seeding
- Detector isolation
"""

import pytest

from watcher.config import AnalyzerThresholds
from watcher.workflow_analyzer import WorkflowAnalyzer
from watcher.workflow_model import (
    AgentInfo,
    ChainStatus,
    HealthStatus,
    IssueType,
    SupervisorState,
    WorkflowEvent,
    WorkflowIssue,
)

from tests.conftest import at, make_entry


START = WorkflowEvent.START
PHASE_START = WorkflowEvent.PHASE_START
PHASE_COMPLETE = WorkflowEvent.PHASE_COMPLETE
MILESTONE = WorkflowEvent.MILESTONE
AGENT_SPAWN = WorkflowEvent.AGENT_SPAWN
AGENT_COMPLETE = WorkflowEvent.AGENT_COMPLETE
COMPLETE = WorkflowEvent.COMPLETE
FAILED = WorkflowEvent.FAILED


@pytest.fixture
def analyzer():
    return WorkflowAnalyzer()


def issues_of(analysis, issue_type):
    return [i for i in analysis.issues if i.type == issue_type]


# -----------------------------------------------------------------------------
# Scenarios
# -----------------------------------------------------------------------------
class TestScenarios:
    """End-to-end detector scenarios."""

    def test_green_before_red_is_tdd_violation(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", PHASE_START, phase="RED"),
            make_entry(2, "build", PHASE_COMPLETE, phase="GREEN"),
        ]
        analysis = analyzer.analyze(entries, now=at(3))
        tdd = issues_of(analysis, IssueType.TDD_VIOLATION)
        assert len(tdd) == 1
        assert tdd[0].confidence == pytest.approx(0.95)
        assert tdd[0].context["phase"] == "GREEN"

    def test_phase_stuck_boundary(self, analyzer):
        timeout = analyzer.thresholds.stuck_timeout_seconds
        entries = [
            make_entry(0, "plan", START),
            make_entry(0, "plan", PHASE_START, phase="draft"),
        ]
        before = analyzer.analyze(entries, now=at(timeout - 1))
        assert issues_of(before, IssueType.PHASE_STUCK) == []

        after = analyzer.analyze(entries, now=at(timeout + 1))
        stuck = issues_of(after, IssueType.PHASE_STUCK)
        assert len(stuck) == 1
        assert stuck[0].context["phase"] == "draft"
        assert 0.75 <= stuck[0].confidence <= 0.95

    def test_agent_failure_fixed_high_confidence(self, analyzer):
        agent = AgentInfo(type="test-engineer", id="a1")
        entries = [
            make_entry(0, "build", AGENT_SPAWN, agent=agent),
            make_entry(1, "build", FAILED, data={"error": "crashed"}, agent=agent),
        ]
        analysis = analyzer.analyze(entries, now=at(2))
        failed = issues_of(analysis, IssueType.AGENT_FAILED)
        assert len(failed) == 1
        assert failed[0].confidence == pytest.approx(0.95)
        assert failed[0].context["agent_id"] == "a1"
        assert analysis.health == HealthStatus.CRITICAL


# -----------------------------------------------------------------------------
# Sequence Detectors
# -----------------------------------------------------------------------------
class TestSequenceDetectors:
    """Detectors that only look at the entry order."""

    def test_loop_detected_at_threshold(self, analyzer):
        entries = [make_entry(0, "plan", START)] + [
            make_entry(i, "plan", PHASE_START, phase="draft", data={"attempt": "same"})
            for i in range(1, 4)
        ]
        loops = issues_of(analyzer.analyze(entries, now=at(5)), IssueType.LOOP_DETECTED)
        assert len(loops) == 1
        assert loops[0].context["repeat_count"] == 3
        assert loops[0].confidence == pytest.approx(0.85)
        assert loops[0].anchor == entries[3].timestamp

    def test_loop_confidence_grows_with_repeats(self, analyzer):
        entries = [
            make_entry(i, "plan", PHASE_START, phase="draft", data={"attempt": "same"})
            for i in range(5)
        ]
        loops = issues_of(analyzer.analyze(entries, now=at(6)), IssueType.LOOP_DETECTED)
        assert loops[0].confidence == pytest.approx(0.91)

    def test_loop_detected_when_payload_changes(self, analyzer):
        entries = [make_entry(0, "build", START)] + [
            make_entry(i, "build", PHASE_START, phase="RED", data={"attempt": i})
            for i in range(1, 6)
        ]
        loops = issues_of(analyzer.analyze(entries, now=at(6)), IssueType.LOOP_DETECTED)
        assert len(loops) == 1
        assert loops[0].context["phase"] == "RED"
        assert loops[0].context["repeat_count"] == 5

    def test_repeated_milestone_counts_as_loop(self, analyzer):
        entries = [
            make_entry(i, "build", MILESTONE, phase="GREEN", data={"name": "tests"})
            for i in range(3)
        ]
        loops = issues_of(analyzer.analyze(entries, now=at(4)), IssueType.LOOP_DETECTED)
        assert len(loops) == 1
        assert loops[0].context["event"] == "MILESTONE"

    def test_new_milestone_resets_loop_count(self, analyzer):
        entries = [
            make_entry(0, "plan", PHASE_START, phase="draft"),
            make_entry(1, "plan", PHASE_START, phase="draft"),
            make_entry(2, "plan", MILESTONE, phase="draft", data={"name": "outline"}),
            make_entry(3, "plan", PHASE_START, phase="draft"),
            make_entry(4, "plan", PHASE_START, phase="draft"),
        ]
        assert issues_of(analyzer.analyze(entries, now=at(5)), IssueType.LOOP_DETECTED) == []

    def test_regression_on_progress_drop(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", MILESTONE, data={"tests_passing": 10}),
            make_entry(2, "build", MILESTONE, data={"tests_passing": 6}),
        ]
        regressions = issues_of(analyzer.analyze(entries, now=at(3)), IssueType.REGRESSION)
        assert len(regressions) == 1
        assert regressions[0].confidence == pytest.approx(0.8)
        assert regressions[0].context["previous"] == 10
        assert regressions[0].context["current"] == 6

    def test_regression_resets_on_new_start(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", MILESTONE, data={"completed": 8}),
            make_entry(2, "build", START),
            make_entry(3, "build", MILESTONE, data={"completed": 1}),
        ]
        assert issues_of(analyzer.analyze(entries, now=at(4)), IssueType.REGRESSION) == []

    def test_out_of_order_complete_without_start(self, analyzer):
        entries = [
            make_entry(0, "plan", START),
            make_entry(1, "plan", PHASE_COMPLETE, phase="review"),
        ]
        issues = issues_of(analyzer.analyze(entries, now=at(2)), IssueType.OUT_OF_ORDER)
        assert len(issues) == 1
        assert issues[0].confidence == pytest.approx(0.85)

    def test_tdd_in_order_is_clean(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", PHASE_START, phase="RED"),
            make_entry(2, "build", PHASE_COMPLETE, phase="RED"),
            make_entry(3, "build", PHASE_START, phase="GREEN"),
            make_entry(4, "build", PHASE_COMPLETE, phase="GREEN"),
        ]
        analysis = analyzer.analyze(entries, now=at(5))
        assert issues_of(analysis, IssueType.TDD_VIOLATION) == []
        assert issues_of(analysis, IssueType.OUT_OF_ORDER) == []

    def test_tdd_violation_once_per_cycle(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", PHASE_START, phase="GREEN"),
            make_entry(2, "build", PHASE_COMPLETE, phase="GREEN"),
            make_entry(3, "build", PHASE_START, phase="REFACTOR"),
            make_entry(4, "build", START),
            make_entry(5, "build", PHASE_START, phase="GREEN"),
        ]
        tdd = issues_of(analyzer.analyze(entries, now=at(6)), IssueType.TDD_VIOLATION)
        assert [i.anchor for i in tdd] == [entries[1].timestamp, entries[5].timestamp]

    def test_every_failure_reported(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", FAILED, data={"error": "tests broke"}),
            make_entry(2, "build", START),
            make_entry(3, "build", FAILED),
        ]
        failures = issues_of(analyzer.analyze(entries, now=at(4)), IssueType.EXPLICIT_FAILURE)
        assert len(failures) == 2
        assert "tests broke" in failures[0].message
        assert failures[1].context["error"] == "Unknown error"
        assert all(f.confidence == pytest.approx(0.95) for f in failures)

    def test_agent_complete_with_failed_status(self, analyzer):
        agent = AgentInfo(type="debugger", id="d1")
        entries = [
            make_entry(0, "build", AGENT_SPAWN, agent=agent),
            make_entry(1, "build", AGENT_COMPLETE, data={"status": "failed", "error": "timeout"}, agent=agent),
        ]
        failed = issues_of(analyzer.analyze(entries, now=at(2)), IssueType.AGENT_FAILED)
        assert len(failed) == 1
        assert failed[0].context["error"] == "timeout"

    def test_command_failure_fails_its_agents(self, analyzer):
        entries = [
            make_entry(0, "build", AGENT_SPAWN, agent=AgentInfo(type="debugger", id="d1")),
            make_entry(1, "plan", AGENT_SPAWN, agent=AgentInfo(type="debugger", id="p1")),
            make_entry(2, "build", FAILED),
        ]
        failed = issues_of(analyzer.analyze(entries, now=at(3)), IssueType.AGENT_FAILED)
        assert [i.context["agent_id"] for i in failed] == ["d1"]

    def test_successful_agent_not_failed(self, analyzer):
        agent = AgentInfo(type="debugger", id="d1")
        entries = [
            make_entry(0, "build", AGENT_SPAWN, agent=agent),
            make_entry(1, "build", AGENT_COMPLETE, data={"status": "success"}, agent=agent),
            make_entry(2, "build", FAILED),
        ]
        assert issues_of(analyzer.analyze(entries, now=at(3)), IssueType.AGENT_FAILED) == []


class TestChainDetectors:
    """Chain ordering: chain_broken and partial_completion."""

    def test_build_without_prerequisite(self, analyzer):
        entries = [make_entry(0, "build", START)]
        analysis = analyzer.analyze(entries, now=at(1))
        broken = issues_of(analysis, IssueType.CHAIN_BROKEN)
        assert len(broken) == 1
        assert broken[0].confidence == pytest.approx(0.6)
        assert broken[0].context["expected_prerequisites"] == ["plan", "ideate"]
        assert analysis.chain_progress["build"] == ChainStatus.IN_PROGRESS

    def test_build_after_plan_is_clean(self, analyzer):
        entries = [
            make_entry(0, "plan", START),
            make_entry(1, "plan", COMPLETE, data={"outputs": ["plan.md"]}),
            make_entry(2, "build", START),
        ]
        assert issues_of(analyzer.analyze(entries, now=at(3)), IssueType.CHAIN_BROKEN) == []

    def test_failed_upstream_raises_confidence(self, analyzer):
        entries = [
            make_entry(0, "plan", START),
            make_entry(1, "plan", FAILED, data={"error": "no scope"}),
            make_entry(2, "build", START),
        ]
        broken = issues_of(analyzer.analyze(entries, now=at(3)), IssueType.CHAIN_BROKEN)
        assert broken[0].confidence == pytest.approx(0.9)
        assert broken[0].context["failed_prerequisites"] == ["plan"]

    def test_completed_command_never_chain_broken(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", COMPLETE, data={"outputs": ["app.py"]}),
        ]
        analysis = analyzer.analyze(entries, now=at(2))
        assert analysis.chain_progress["build"] == ChainStatus.COMPLETE
        assert issues_of(analysis, IssueType.CHAIN_BROKEN) == []

    def test_partial_completion_counts_pending_steps(self, analyzer):
        entries = [
            make_entry(0, "ship", START),
            make_entry(1, "ship", COMPLETE),
        ]
        partial = issues_of(analyzer.analyze(entries, now=at(2)), IssueType.PARTIAL_COMPLETION)
        assert len(partial) == 1
        assert partial[0].context["pending_steps"] == ["ideate", "plan", "build"]
        assert partial[0].confidence == pytest.approx(0.8)

    def test_full_chain_is_clean(self, analyzer):
        entries = []
        for i, command in enumerate(["ideate", "plan", "build", "ship"]):
            entries.append(make_entry(i * 10, command, START))
            entries.append(make_entry(i * 10 + 5, command, COMPLETE, data={"outputs": ["x"]}))
        analysis = analyzer.analyze(entries, now=at(40))
        assert issues_of(analysis, IssueType.PARTIAL_COMPLETION) == []
        assert issues_of(analysis, IssueType.CHAIN_BROKEN) == []
        assert all(s == ChainStatus.COMPLETE for s in analysis.chain_progress.values())


class TestCompletionDetectors:
    """Milestone counts and outputs checked at completion."""

    def test_missing_milestones_on_complete(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", MILESTONE, data={"name": "one"}),
            make_entry(2, "build", COMPLETE, data={"outputs": ["app.py"]}),
        ]
        missing = issues_of(analyzer.analyze(entries, now=at(3)), IssueType.MISSING_MILESTONES)
        assert len(missing) == 1
        assert missing[0].context["actual"] == 1
        assert missing[0].context["expected"] == 4
        assert missing[0].confidence == pytest.approx(0.5 + 0.4 * 0.75)

    def test_enough_milestones(self, analyzer):
        entries = [make_entry(0, "ship", START)] + [
            make_entry(i, "ship", MILESTONE, data={"n": i}) for i in range(1, 3)
        ] + [make_entry(3, "ship", COMPLETE)]
        assert issues_of(analyzer.analyze(entries, now=at(4)), IssueType.MISSING_MILESTONES) == []

    def test_phase_without_milestones(self, analyzer):
        entries = [
            make_entry(0, "build", PHASE_START, phase="RED"),
            make_entry(1, "build", PHASE_COMPLETE, phase="RED"),
        ]
        missing = issues_of(analyzer.analyze(entries, now=at(2)), IssueType.MISSING_MILESTONES)
        assert len(missing) == 1
        assert missing[0].context["phase"] == "RED"

    def test_incomplete_outputs(self, analyzer):
        entries = [
            make_entry(0, "plan", START),
            make_entry(1, "plan", COMPLETE, data={"outputs": []}),
        ]
        incomplete = issues_of(analyzer.analyze(entries, now=at(2)), IssueType.INCOMPLETE_OUTPUTS)
        assert len(incomplete) == 1
        assert incomplete[0].context["missing_fields"] == ["outputs"]
        assert incomplete[0].confidence == pytest.approx(0.8)

    def test_ship_has_no_expected_outputs(self, analyzer):
        entries = [make_entry(0, "ship", START), make_entry(1, "ship", COMPLETE)]
        assert issues_of(analyzer.analyze(entries, now=at(2)), IssueType.INCOMPLETE_OUTPUTS) == []


# -----------------------------------------------------------------------------
# Time-based Detectors
# -----------------------------------------------------------------------------
class TestTimeDetectors:
    """Detectors driven by elapsed time since the last relevant entry."""

    def test_silence_after_stuck_timeout(self, analyzer):
        entries = [make_entry(0, "plan", START)]
        assert issues_of(analyzer.analyze(entries, now=at(200)), IssueType.SILENCE) == []
        silence = issues_of(analyzer.analyze(entries, now=at(300)), IssueType.SILENCE)
        assert len(silence) == 1
        assert silence[0].context["silence_duration_ms"] == 300000

    def test_no_silence_after_completion(self, analyzer):
        entries = [
            make_entry(0, "plan", START),
            make_entry(1, "plan", COMPLETE, data={"outputs": ["x"]}),
        ]
        analysis = analyzer.analyze(entries, now=at(1000))
        assert issues_of(analysis, IssueType.SILENCE) == []
        assert issues_of(analysis, IssueType.ABRUPT_STOP) == []
        assert analysis.command_terminated is True

    def test_completed_phase_not_stuck(self, analyzer):
        entries = [
            make_entry(0, "plan", START),
            make_entry(1, "plan", PHASE_START, phase="draft"),
            make_entry(2, "plan", PHASE_COMPLETE, phase="draft"),
        ]
        assert issues_of(analyzer.analyze(entries, now=at(1000)), IssueType.PHASE_STUCK) == []

    def test_declining_velocity(self, analyzer):
        offsets = [0, 10, 30, 60, 100, 150]
        entries = [make_entry(0, "build", START)] + [
            make_entry(t, "build", MILESTONE, data={"n": n}) for n, t in enumerate(offsets)
        ]
        slowing = issues_of(analyzer.analyze(entries, now=at(151)), IssueType.DECLINING_VELOCITY)
        assert len(slowing) == 1
        assert slowing[0].confidence == pytest.approx(0.7)
        assert slowing[0].context["gaps_ms"] == [10000, 20000, 30000, 40000, 50000]

    def test_steady_velocity(self, analyzer):
        entries = [make_entry(0, "build", START)] + [
            make_entry(t, "build", MILESTONE, data={"n": t}) for t in range(0, 60, 10)
        ]
        assert issues_of(analyzer.analyze(entries, now=at(51)), IssueType.DECLINING_VELOCITY) == []

    def test_agent_silence_without_followup(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", AGENT_SPAWN, agent=AgentInfo(type="test-engineer", id="a1")),
        ]
        assert issues_of(analyzer.analyze(entries, now=at(40)), IssueType.AGENT_SILENCE) == []

        silent = issues_of(analyzer.analyze(entries, now=at(60)), IssueType.AGENT_SILENCE)
        assert len(silent) == 1
        assert silent[0].context["agent_type"] == "test-engineer"

    def test_agent_activity_clears_silence_but_not_abandonment(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", AGENT_SPAWN, agent=AgentInfo(type="test-engineer", id="a1")),
            make_entry(5, "build", MILESTONE, data={"agent_id": "a1", "name": "tests"}),
        ]
        analysis = analyzer.analyze(entries, now=at(60))
        assert issues_of(analysis, IssueType.AGENT_SILENCE) == []
        assert issues_of(analysis, IssueType.ABANDONED_AGENT) == []

        analysis = analyzer.analyze(entries, now=at(100))
        abandoned = issues_of(analysis, IssueType.ABANDONED_AGENT)
        assert len(abandoned) == 1
        assert abandoned[0].confidence == pytest.approx(0.8)
        assert abandoned[0].anchor == f"a1:{entries[2].timestamp}"

    def test_completed_agent_not_tracked(self, analyzer):
        agent = AgentInfo(type="debugger", id="d1")
        entries = [
            make_entry(0, "build", AGENT_SPAWN, agent=agent),
            make_entry(1, "build", AGENT_COMPLETE, agent=agent),
        ]
        analysis = analyzer.analyze(entries, now=at(500))
        assert analysis.active_agents == []
        assert issues_of(analysis, IssueType.ABANDONED_AGENT) == []

    def test_abrupt_stop_after_progress(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", PHASE_START, phase="RED"),
            make_entry(2, "build", MILESTONE, phase="RED", data={"name": "tests"}),
        ]
        assert issues_of(analyzer.analyze(entries, now=at(100)), IssueType.ABRUPT_STOP) == []
        stopped = issues_of(analyzer.analyze(entries, now=at(160)), IssueType.ABRUPT_STOP)
        assert len(stopped) == 1
        assert stopped[0].confidence == pytest.approx(0.85)

    def test_no_abrupt_stop_without_progress(self, analyzer):
        entries = [make_entry(0, "plan", START)]
        assert issues_of(analyzer.analyze(entries, now=at(200)), IssueType.ABRUPT_STOP) == []


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
class TestAnalysis:
    """Health, derived state and robustness."""

    def test_empty_log_is_healthy(self, analyzer):
        analysis = analyzer.analyze([], now=at(0))
        assert analysis.health == HealthStatus.HEALTHY
        assert analysis.issues == []
        assert analysis.current_command is None

    @pytest.mark.parametrize("confidence,expected", [
        (0.95, HealthStatus.CRITICAL),
        (0.9, HealthStatus.WARNING),
        (0.7, HealthStatus.WARNING),
        (0.69, HealthStatus.HEALTHY),
    ])
    def test_health_cutoffs(self, analyzer, confidence, expected):
        issue = WorkflowIssue(type=IssueType.SILENCE, confidence=confidence, message="x")
        assert analyzer.calculate_health([issue]) == expected

    def test_derived_state(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", PHASE_START, phase="RED"),
            make_entry(2, "build", MILESTONE, phase="RED", data={"name": "tests"}),
            make_entry(3, "build", AGENT_SPAWN, agent=AgentInfo(type="test-engineer", id="a1")),
        ]
        analysis = analyzer.analyze(entries, now=at(4))
        assert analysis.current_command == "build"
        assert analysis.current_phase == "RED"
        assert analysis.phase_start_time == entries[1].timestamp
        assert analysis.last_activity_time == entries[3].timestamp
        assert analysis.milestone_timestamps == [entries[2].timestamp]
        assert analysis.expected_milestones == 4
        assert analysis.actual_milestones == 1
        assert [a.id for a in analysis.active_agents] == ["a1"]

    def test_deterministic(self, analyzer):
        entries = [
            make_entry(0, "build", START),
            make_entry(1, "build", PHASE_START, phase="GREEN"),
            make_entry(2, "build", FAILED, data={"error": "x"}),
        ]
        first = analyzer.analyze(entries, now=at(500)).to_dict()
        second = analyzer.analyze(entries, now=at(500)).to_dict()
        assert first == second

    def test_baseline_seeds_chain_progress(self, analyzer):
        baseline = SupervisorState()
        baseline.chain_progress["plan"] = ChainStatus.COMPLETE
        entries = [make_entry(0, "build", START)]

        analysis = analyzer.analyze(entries, now=at(1), baseline=baseline)
        assert issues_of(analysis, IssueType.CHAIN_BROKEN) == []
        assert analysis.chain_progress["plan"] == ChainStatus.COMPLETE

    def test_baseline_phase_activity_drives_stuck(self, analyzer):
        baseline = SupervisorState(
            current_command="plan",
            current_phase="draft",
            last_activity_time=make_entry(0, "plan", START).timestamp,
        )
        analysis = analyzer.analyze([], now=at(300), baseline=baseline)
        assert len(issues_of(analysis, IssueType.PHASE_STUCK)) == 1

    def test_failing_detector_isolated(self, analyzer):
        def explode(entries, state, now):
            raise RuntimeError("detector bug")

        issue_type, _ = analyzer._detectors[0]
        analyzer._detectors[0] = (issue_type, explode)

        entries = [make_entry(0, "build", FAILED, data={"error": "boom"})]
        analysis = analyzer.analyze(entries, now=at(1))
        assert len(issues_of(analysis, IssueType.EXPLICIT_FAILURE)) == 1
        assert analysis.health == HealthStatus.CRITICAL

    def test_custom_thresholds(self):
        analyzer = WorkflowAnalyzer(AnalyzerThresholds(stuck_timeout_seconds=60))
        entries = [make_entry(0, "plan", START), make_entry(0, "plan", PHASE_START, phase="draft")]
        assert len(issues_of(analyzer.analyze(entries, now=at(61)), IssueType.PHASE_STUCK)) == 1
