"""
Tests for the risk escalation state machine.
"""

import pytest

from integrity_monitoring.events import EventType, IntegrityEvent
from integrity_monitoring.risk import RiskEngine, RiskLevel, RiskPolicy, RiskState, replay, transition


def _events(*kinds, session_id="s1"):
    return [
        IntegrityEvent(
            session_id=session_id,
            event_type=kind,
            timestamp=float(idx),
            sequence=idx,
        )
        for idx, kind in enumerate(kinds, start=1)
    ]


class TestRiskLevel:
    def test_levels_are_ordered(self):
        assert RiskLevel.NOMINAL < RiskLevel.ELEVATED < RiskLevel.CRITICAL
        assert max(RiskLevel.NOMINAL, RiskLevel.CRITICAL) is RiskLevel.CRITICAL

    def test_step_down_stops_at_nominal(self):
        assert RiskLevel.CRITICAL.step_down() is RiskLevel.ELEVATED
        assert RiskLevel.NOMINAL.step_down() is RiskLevel.NOMINAL


class TestTransition:
    def test_three_tab_switches_reach_critical(self):
        state = replay(_events(EventType.TAB_SWITCH, EventType.TAB_SWITCH, EventType.TAB_SWITCH))
        assert state.level is RiskLevel.CRITICAL
        assert state.warning_count == 3
        assert state.focus_loss_count == 3

    def test_focus_losses_combine_fullscreen_and_tab(self):
        state = replay(
            _events(EventType.FULLSCREEN_EXIT, EventType.TAB_SWITCH, EventType.FULLSCREEN_EXIT)
        )
        assert state.level is RiskLevel.CRITICAL

    def test_single_tab_switch_elevates(self):
        state = replay(_events(EventType.TAB_SWITCH))
        assert state.level is RiskLevel.ELEVATED

    def test_face_not_detected_then_clean_window_recovers(self):
        state = replay(
            _events(
                EventType.FACE_NOT_DETECTED,
                EventType.VERIFICATION_CLEAN,
                EventType.VERIFICATION_CLEAN,
                EventType.VERIFICATION_CLEAN,
            )
        )
        assert state.level is RiskLevel.NOMINAL
        assert state.warning_count == 1

    def test_recovery_needs_a_full_window(self):
        state = replay(
            _events(
                EventType.MULTIPLE_FACES,
                EventType.VERIFICATION_CLEAN,
                EventType.VERIFICATION_CLEAN,
            )
        )
        assert state.level is RiskLevel.ELEVATED
        assert state.clean_streak == 2

    def test_warning_resets_clean_streak(self):
        state = replay(
            _events(
                EventType.FACE_NOT_DETECTED,
                EventType.VERIFICATION_CLEAN,
                EventType.VERIFICATION_CLEAN,
                EventType.COPY_ATTEMPT,
                EventType.VERIFICATION_CLEAN,
            )
        )
        assert state.level is RiskLevel.ELEVATED
        assert state.clean_streak == 1

    def test_critical_steps_down_one_level_per_window(self):
        clean = [EventType.VERIFICATION_CLEAN] * 3
        state = replay(_events(EventType.FACE_MISMATCH, *clean))
        assert state.level is RiskLevel.ELEVATED
        state = replay(_events(EventType.FACE_MISMATCH, *clean, *clean))
        assert state.level is RiskLevel.NOMINAL

    def test_face_mismatch_is_critical(self):
        state = replay(_events(EventType.FACE_MISMATCH))
        assert state.level is RiskLevel.CRITICAL

    @pytest.mark.parametrize(
        "kind",
        [
            EventType.COPY_ATTEMPT,
            EventType.PASTE_ATTEMPT,
            EventType.CONTEXT_MENU,
            EventType.SUSPICIOUS_EYE_MOVEMENT,
            EventType.CAPTURE_UNAVAILABLE,
        ],
    )
    def test_warning_only_events_keep_level(self, kind):
        state = replay(_events(kind))
        assert state.level is RiskLevel.NOMINAL
        assert state.warning_count == 1

    @pytest.mark.parametrize(
        "kind", [EventType.ANALYSIS_UNAVAILABLE, EventType.REFERENCE_MISSING_FACE]
    )
    def test_operational_events_do_not_warn(self, kind):
        state = replay(_events(kind))
        assert state.level is RiskLevel.NOMINAL
        assert state.warning_count == 0
        assert state.events_seen == 1

    def test_transition_is_pure(self):
        start = RiskState.initial()
        event = _events(EventType.TAB_SWITCH)[0]
        assert transition(start, event) == transition(start, event)
        assert start.level is RiskLevel.NOMINAL

    def test_custom_policy(self):
        policy = RiskPolicy(recovery_window_events=1, focus_loss_critical_count=2)
        state = replay(_events(EventType.TAB_SWITCH, EventType.TAB_SWITCH), policy)
        assert state.level is RiskLevel.CRITICAL
        state = replay(_events(EventType.TAB_SWITCH, EventType.VERIFICATION_CLEAN), policy)
        assert state.level is RiskLevel.NOMINAL

    def test_recent_window_is_bounded(self):
        policy = RiskPolicy(window_events=2)
        state = replay(
            _events(EventType.COPY_ATTEMPT, EventType.PASTE_ATTEMPT, EventType.CONTEXT_MENU),
            policy,
        )
        assert state.recent == ("paste_attempt", "context_menu")


class TestRiskEngine:
    def test_replay_matches_live_state(self):
        events = _events(
            EventType.TAB_SWITCH,
            EventType.FACE_NOT_DETECTED,
            EventType.VERIFICATION_CLEAN,
            EventType.COPY_ATTEMPT,
            EventType.VERIFICATION_CLEAN,
            EventType.VERIFICATION_CLEAN,
            EventType.VERIFICATION_CLEAN,
        )
        engine = RiskEngine()
        engine.enable("s1")
        for event in events:
            engine.apply(event)
        assert engine.snapshot("s1") == replay(events)

    def test_apply_requires_enabled_session(self):
        engine = RiskEngine()
        with pytest.raises(KeyError):
            engine.apply(_events(EventType.TAB_SWITCH)[0])

    def test_disable_returns_final_state(self):
        engine = RiskEngine()
        engine.enable("s1")
        before, after = engine.apply(_events(EventType.FACE_MISMATCH)[0])
        assert before.level is RiskLevel.NOMINAL
        assert after.level is RiskLevel.CRITICAL
        assert engine.disable("s1") == after
        assert not engine.is_enabled("s1")
        assert engine.snapshot("s1") is None
