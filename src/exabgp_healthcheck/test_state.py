"""
Unit Tests for the Rise/Fall Hysteresis

This test module validates the pure state transition logic that decides when
a service is announced or withdrawn.

Test Coverage:
    - DOWN -> UP after exactly ``rise`` consecutive successes
    - UP -> DOWN after exactly ``fall`` consecutive failures
    - Counter resets on direction reversal
    - Flip detection (the first result is never a flip)
    - Status labels for the status file and process title
    - Disable/enable reset
"""

import unittest

from .state import (
    STATUS_DISABLED,
    ServiceState,
    ServiceStatus,
    Transition,
    apply_check_result,
    reset_state,
    should_report,
    status_label,
)


def feed(state, results, rise, fall):
    """Apply a sequence of booleans and collect the transitions."""
    transitions = []
    for success in results:
        state, transition, _ = apply_check_result(state, success, 0 if success else 1, rise, fall)
        transitions.append(transition)
    return state, transitions


class TestRise(unittest.TestCase):
    """Test the DOWN -> UP direction."""

    def test_goes_up_after_exactly_rise_successes(self):
        for rise in (1, 2, 3, 10):
            with self.subTest(rise=rise):
                state, transitions = feed(ServiceState(), [True] * rise, rise, 1)
                self.assertTrue(state.up)
                self.assertEqual(transitions[-1], Transition.WENT_UP)
                self.assertEqual(transitions[:-1], [Transition.RISING] * (rise - 1))
                self.assertEqual(state.rise_count, 0, "rise_count resets on going up")

    def test_not_up_one_short(self):
        state, transitions = feed(ServiceState(), [True] * 4, 5, 1)
        self.assertFalse(state.up)
        self.assertEqual(state.rise_count, 4)
        self.assertNotIn(Transition.WENT_UP, transitions)

    def test_failure_restarts_rise_sequence(self):
        """Test nine successes, a failure, then ten fresh successes are needed (rise=10)."""
        state, _ = feed(ServiceState(), [True] * 9 + [False], 10, 1)
        self.assertFalse(state.up)
        self.assertEqual(state.rise_count, 0)

        state, transitions = feed(state, [True] * 9, 10, 1)
        self.assertFalse(state.up, "nine fresh successes are not enough")

        state, transitions = feed(state, [True], 10, 1)
        self.assertTrue(state.up)
        self.assertEqual(transitions, [Transition.WENT_UP])

    def test_failure_while_down_is_bookkeeping_only(self):
        state, transitions = feed(ServiceState(), [False, False, False], 2, 2)
        self.assertEqual(state.status, ServiceStatus.DOWN)
        self.assertEqual(transitions, [Transition.NONE] * 3)
        self.assertEqual(state.fall_count, 0)


class TestFall(unittest.TestCase):
    """Test the UP -> DOWN direction."""

    def setUp(self):
        self.up_state = ServiceState(status=ServiceStatus.UP, last_success=True, last_exit_code=0)

    def test_goes_down_after_exactly_fall_failures(self):
        for fall in (1, 2, 5):
            with self.subTest(fall=fall):
                state, transitions = feed(self.up_state, [False] * fall, 1, fall)
                self.assertFalse(state.up)
                self.assertEqual(transitions[-1], Transition.WENT_DOWN)
                self.assertEqual(transitions[:-1], [Transition.FALLING] * (fall - 1))
                self.assertEqual(state.fall_count, 0, "fall_count resets on going down")

    def test_success_restarts_fall_sequence(self):
        state, _ = feed(self.up_state, [False, False, True], 1, 3)
        self.assertTrue(state.up)
        self.assertEqual(state.fall_count, 0)

        state, _ = feed(state, [False, False], 1, 3)
        self.assertTrue(state.up, "two fresh failures are not enough with fall=3")
        state, transitions = feed(state, [False], 1, 3)
        self.assertFalse(state.up)
        self.assertEqual(transitions, [Transition.WENT_DOWN])

    def test_success_while_up_is_bookkeeping_only(self):
        state, transitions = feed(self.up_state, [True, True], 2, 2)
        self.assertTrue(state.up)
        self.assertEqual(transitions, [Transition.NONE, Transition.NONE])


class TestFlips(unittest.TestCase):

    def test_first_result_is_not_a_flip(self):
        _, _, flipped = apply_check_result(ServiceState(), False, 1, 2, 2)
        self.assertFalse(flipped)

    def test_reversal_is_a_flip(self):
        state, _, _ = apply_check_result(ServiceState(), True, 0, 3, 2)
        _, _, flipped = apply_check_result(state, False, 2, 3, 2)
        self.assertTrue(flipped)

    def test_repeat_is_not_a_flip(self):
        state, _, _ = apply_check_result(ServiceState(), True, 0, 3, 2)
        _, _, flipped = apply_check_result(state, True, 0, 3, 2)
        self.assertFalse(flipped)

    def test_exit_code_recorded(self):
        state, _, _ = apply_check_result(ServiceState(), False, -2, 3, 2)
        self.assertEqual(state.last_exit_code, -2)
        self.assertFalse(state.last_success)

    def test_input_state_not_modified(self):
        original = ServiceState()
        apply_check_result(original, True, 0, 3, 2)
        self.assertEqual(original, ServiceState())


class TestLabels(unittest.TestCase):

    def test_rising_label(self):
        state, transition, _ = apply_check_result(ServiceState(), True, 0, 3, 2)
        self.assertEqual(status_label(state, transition, 3, 2), "DOWN | RISING 1/3")

    def test_falling_label(self):
        up = ServiceState(status=ServiceStatus.UP)
        state, transition, _ = apply_check_result(up, False, 1, 3, 2)
        self.assertEqual(status_label(state, transition, 3, 2), "UP | FALLING 1/2")

    def test_plain_labels(self):
        state, transition, _ = apply_check_result(ServiceState(), True, 0, 1, 1)
        self.assertEqual(status_label(state, transition, 1, 1), "UP")
        state, transition, _ = apply_check_result(state, False, 1, 1, 1)
        self.assertEqual(status_label(state, transition, 1, 1), "DOWN")

    def test_disabled_label(self):
        self.assertEqual(status_label(reset_state(True), Transition.NONE, 1, 1), STATUS_DISABLED)

    def test_should_report(self):
        self.assertFalse(should_report(Transition.NONE, False))
        self.assertTrue(should_report(Transition.NONE, True))
        self.assertTrue(should_report(Transition.RISING, False))


class TestReset(unittest.TestCase):

    def test_reset_clears_everything(self):
        busy = ServiceState(status=ServiceStatus.UP, rise_count=2, fall_count=1,
                            last_success=False, last_exit_code=3)
        for disabled in (True, False):
            with self.subTest(disabled=disabled):
                state = reset_state(disabled)
                self.assertEqual(state.status, ServiceStatus.DOWN)
                self.assertEqual(state.disabled, disabled)
                self.assertEqual((state.rise_count, state.fall_count), (0, 0))
                self.assertIsNone(state.last_success)
                self.assertNotEqual(state, busy)


if __name__ == '__main__':
    unittest.main()
