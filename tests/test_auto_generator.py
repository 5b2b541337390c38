import unittest
import sys
import os

# Ensure we can import modules from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from auto_generator import CancellationToken, auto_generate
from sample_data import overloaded_bundle, school_bundle, unavailable_fixed_bundle


class TestAutoGenerate(unittest.TestCase):
    def test_over_constrained_input_terminates(self):
        result = auto_generate(overloaded_bundle(), {"max_attempts": 5, "seed": 2, "max_backtrack_steps": 5})
        self.assertEqual(result["status"], "fail")
        self.assertEqual(result["attempts"], 5)
        self.assertEqual(result["best_fill_rate"], 80.0)
        self.assertEqual(len(result["history"]), 5)
        self.assertFalse(result["cancelled"])

    def test_stops_after_complete_attempt(self):
        events = []
        result = auto_generate(school_bundle(), {"max_attempts": 5, "seed": 4}, on_progress=events.append)
        self.assertEqual(result["status"], "success")
        self.assertEqual(result["attempts"], 1)
        self.assertEqual(events[0]["attempt"], 1)
        self.assertEqual(events[0]["best_fill_rate"], 60.0)

    def test_stops_on_target_fill_rate(self):
        result = auto_generate(overloaded_bundle(), {"max_attempts": 5, "target_fill_rate": 75,
                                                     "max_backtrack_steps": 5})
        self.assertEqual(result["attempts"], 1)

    def test_cancel_before_start(self):
        token = CancellationToken()
        token.cancel()
        result = auto_generate(school_bundle(), {"max_attempts": 3}, cancel_token=token)
        self.assertEqual(result["status"], "cancelled")
        self.assertEqual(result["attempts"], 0)
        self.assertNotIn("schedule", result)

    def test_cancel_between_attempts_keeps_best(self):
        token = CancellationToken()
        result = auto_generate(overloaded_bundle(), {"max_attempts": 5, "max_backtrack_steps": 5},
                               cancel_token=token, on_progress=lambda event: token.cancel())
        self.assertTrue(result["cancelled"])
        self.assertEqual(result["attempts"], 1)
        self.assertEqual(result["best_fill_rate"], 80.0)
        self.assertIn("schedule", result)

    def test_attempt_errors_do_not_escape(self):
        result = auto_generate(overloaded_bundle(), {"max_attempts": 3, "max_backtrack_steps": 5,
                                                     "raise_on_fail": True})
        self.assertEqual(result["status"], "fail")
        self.assertEqual(result["attempts"], 0)
        self.assertEqual([h["status"] for h in result["history"]], ["error"] * 3)

    def test_rejected_attempt_does_not_stop_the_loop(self):
        result = auto_generate(unavailable_fixed_bundle(), {"max_attempts": 3, "seed": 1})
        self.assertEqual(result["status"], "rejected")
        self.assertEqual(result["attempts"], 3)
        self.assertEqual([h["status"] for h in result["history"]], ["rejected"] * 3)

    def test_config_error_is_not_retried(self):
        bundle = school_bundle()
        bundle["teachers"][0]["subjects"].append("不存在")
        result = auto_generate(bundle, {"max_attempts": 5})
        self.assertEqual(result["status"], "error")
        self.assertEqual(result["attempts"], 0)


if __name__ == '__main__':
    unittest.main()
