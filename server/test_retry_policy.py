import unittest

from relationship_errors import BackendError, BackendUnavailable, CapacityExceeded, NotFound, Throttled
from relationship_store import InMemoryRelationshipStore
from relationship_model import AddParams
from retry_policy import RetryPolicy, call_with_retry


class FlakyCall:
    def __init__(self, failures, value="ok"):
        self.failures = list(failures)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.value


class TestRetry(unittest.TestCase):
    def setUp(self):
        self.sleeps = []

    def test_retries_transient_failures(self):
        fn = FlakyCall([BackendUnavailable("down"), Throttled("slow down")])
        policy = RetryPolicy(max_attempts=3, base_delay=0.1, multiplier=2.0)
        self.assertEqual(call_with_retry(fn, policy, sleep=self.sleeps.append), "ok")
        self.assertEqual(fn.calls, 3)
        self.assertEqual(self.sleeps, [0.1, 0.2])

    def test_gives_up_after_max_attempts(self):
        fn = FlakyCall([BackendUnavailable("down")] * 5)
        with self.assertRaises(BackendUnavailable):
            call_with_retry(fn, RetryPolicy(max_attempts=2), sleep=self.sleeps.append)
        self.assertEqual(fn.calls, 2)
        self.assertEqual(len(self.sleeps), 1)

    def test_guard_failures_are_not_retried(self):
        for error in (CapacityExceeded("U1", "F3", 2), NotFound("U1", "F1"), BackendError("broken")):
            fn = FlakyCall([error])
            with self.assertRaises(type(error)):
                call_with_retry(fn, RetryPolicy(max_attempts=5), sleep=self.sleeps.append)
            self.assertEqual(fn.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=3.0, multiplier=10.0)
        self.assertEqual(policy.delay_for(1), 1.0)
        self.assertEqual(policy.delay_for(2), 3.0)
        self.assertEqual(policy.delay_for(5), 3.0)

    def test_invalid_policy(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)
        with self.assertRaises(ValueError):
            RetryPolicy(base_delay=-1)
        # A shrinking or negative multiplier would hand time.sleep a negative delay
        with self.assertRaises(ValueError):
            RetryPolicy(multiplier=-2.0)
        with self.assertRaises(ValueError):
            RetryPolicy(multiplier=0.5)
        self.assertEqual(RetryPolicy(multiplier=1.0, base_delay=0.2).delay_for(4), 0.2)

    def test_wraps_store_calls(self):
        store = InMemoryRelationshipStore()
        result = call_with_retry(lambda: store.add("U1", "F1", AddParams(max_size=1)), sleep=self.sleeps.append)
        self.assertTrue(result.changed)
        with self.assertRaises(CapacityExceeded):
            call_with_retry(lambda: store.add("U1", "F2", AddParams(max_size=1)), sleep=self.sleeps.append)
        self.assertEqual(self.sleeps, [])


if __name__ == "__main__":
    unittest.main()
