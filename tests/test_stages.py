"""Tests for stage transition tracking."""

from cirelay.engine.stages import StageTransitions, format_stage_label

from conftest import stage


class TestStageTransitions:
    def test_reports_each_pair_once(self):
        seen = StageTransitions()
        assert seen.observe([stage("Build", "SUCCESS")]) == [stage("Build", "SUCCESS")]
        fresh = seen.observe([stage("Build", "SUCCESS"), stage("Deploy", "IN_PROGRESS")])
        assert [s.name for s in fresh] == ["Deploy"]
        fresh = seen.observe([stage("Build", "SUCCESS"), stage("Deploy", "SUCCESS")])
        assert [(s.name, s.status) for s in fresh] == [("Deploy", "SUCCESS")]
        assert len(seen) == 3

    def test_duration_change_is_not_a_transition(self):
        seen = StageTransitions()
        seen.observe([stage("Build", "IN_PROGRESS", 100)])
        assert seen.observe([stage("Build", "IN_PROGRESS", 900)]) == []

    def test_not_executed_ignored(self):
        seen = StageTransitions()
        assert seen.observe([stage("Deploy", "NOT_EXECUTED")]) == []
        assert ("Deploy", "NOT_EXECUTED") not in seen
        assert len(seen) == 0

    def test_snapshot_order_kept(self):
        seen = StageTransitions()
        fresh = seen.observe([stage("A", "SUCCESS"), stage("B", "SUCCESS"), stage("C", "IN_PROGRESS")])
        assert [s.name for s in fresh] == ["A", "B", "C"]

    def test_instances_are_independent(self):
        first, second = StageTransitions(), StageTransitions()
        first.observe([stage("Build", "SUCCESS")])
        assert second.observe([stage("Build", "SUCCESS")]) == [stage("Build", "SUCCESS")]


class TestFormatStageLabel:
    def test_running(self):
        assert format_stage_label(12, stage("Test", "IN_PROGRESS", 3400)) == "Build #12 - Running: Test (3s)"

    def test_completed(self):
        assert format_stage_label(12, stage("Test", "FAILED", 65_600)) == "Build #12 - Completed: Test (66s)"

    def test_unknown_duration(self):
        assert format_stage_label(1, stage("Lint", "SUCCESS", None)) == "Build #1 - Completed: Lint (0s)"
