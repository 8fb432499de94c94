import unittest
import sys
import warnings
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent))
from actionflow import Node, Flow


class FlakyNode(Node):
    """Fails the first `fail_count` exec attempts, then succeeds."""
    def __init__(self, fail_count, **kwargs):
        super().__init__(**kwargs)
        self.fail_count = fail_count
        self.attempts = 0

    def exec(self, prep_res):
        self.attempts += 1
        if self.attempts <= self.fail_count:
            raise ValueError(f"failure {self.attempts}")
        return "ok"

    def post(self, shared, prep_res, exec_res):
        shared['result'] = exec_res
        return "done"


class RecordingFallbackNode(Node):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.attempts = 0
        self.fallback_calls = []

    def exec(self, prep_res):
        self.attempts += 1
        raise ValueError(f"failure {self.attempts}")

    def exec_fallback(self, prep_res, exc):
        self.fallback_calls.append(exc)
        return "recovered"

    def post(self, shared, prep_res, exec_res):
        shared['result'] = exec_res


class TestNodeLifecycle(unittest.TestCase):
    def test_prep_exec_post_order_and_values(self):
        calls = []

        class TracingNode(Node):
            def prep(self, shared):
                calls.append('prep')
                return shared['x']

            def exec(self, prep_res):
                calls.append('exec')
                return prep_res * 2

            def post(self, shared, prep_res, exec_res):
                calls.append('post')
                shared['y'] = (prep_res, exec_res)
                return "next"

        shared = {'x': 21}
        action = TracingNode().run(shared)

        self.assertEqual(calls, ['prep', 'exec', 'post'])
        self.assertEqual(shared['y'], (21, 42))
        self.assertEqual(action, "next")

    def test_default_hooks_return_none(self):
        self.assertIsNone(Node().run({}))

    def test_run_warns_when_node_has_successors(self):
        node = Node()
        node >> Node()
        with self.assertWarns(UserWarning):
            node.run({})

    def test_invalid_max_retries(self):
        with self.assertRaises(ValueError):
            Node(max_retries=0)


class TestRetry(unittest.TestCase):
    def test_succeeds_after_k_failures(self):
        """k failures below max_retries: exec runs k+1 times and backoff is applied k times."""
        for k in range(4):
            with self.subTest(k=k):
                sleeps = []
                with patch('time.sleep', side_effect=sleeps.append):
                    node = FlakyNode(fail_count=k, max_retries=5, wait=0.5)
                    shared = {}
                    action = node.run(shared)
                self.assertEqual(node.attempts, k + 1)
                self.assertEqual(len(sleeps), k)
                self.assertEqual(shared['result'], "ok")
                self.assertEqual(action, "done")

    def test_fallback_called_once_with_final_failure(self):
        node = RecordingFallbackNode(max_retries=3)
        shared = {}
        node.run(shared)

        self.assertEqual(node.attempts, 3)
        self.assertEqual(len(node.fallback_calls), 1)
        self.assertEqual(str(node.fallback_calls[0]), "failure 3")
        self.assertEqual(shared['result'], "recovered")

    def test_default_fallback_reraises_unchanged(self):
        err = KeyError("boom")

        class Failing(Node):
            def exec(self, prep_res):
                raise err

        with self.assertRaises(KeyError) as ctx:
            Failing(max_retries=2).run({})
        self.assertIs(ctx.exception, err)

    def test_failing_fallback_propagates(self):
        class BadFallback(Node):
            def exec(self, prep_res):
                raise ValueError("exec failed")

            def exec_fallback(self, prep_res, exc):
                raise RuntimeError("fallback failed")

        with self.assertRaises(RuntimeError):
            BadFallback(max_retries=2).run({})

    def test_failing_fallback_aborts_flow(self):
        class BadFallback(Node):
            def exec(self, prep_res):
                raise ValueError("exec failed")

            def exec_fallback(self, prep_res, exc):
                raise RuntimeError("fallback failed")

        class Marker(Node):
            def post(self, shared, prep_res, exec_res):
                shared['reached'] = True

        start = BadFallback()
        start >> Marker()
        shared = {}
        with self.assertRaises(RuntimeError):
            Flow(start=start).run(shared)
        self.assertNotIn('reached', shared)

    def test_no_sleep_on_single_attempt(self):
        sleeps = []
        with patch('time.sleep', side_effect=sleeps.append):
            RecordingFallbackNode(max_retries=1, wait=1).run({})
        self.assertEqual(sleeps, [])


class TestTransitions(unittest.TestCase):
    def test_next_uses_default_action(self):
        a, b = Node(), Node()
        self.assertIs(a.next(b), b)
        self.assertIs(a.successors["default"], b)

    def test_on_next_registers_action(self):
        a, b = Node(), Node()
        self.assertIs(a.on("yes").next(b), b)
        self.assertIs(a.successors["yes"], b)

    def test_operator_sugar(self):
        a, b, c = Node(), Node(), Node()
        a >> b
        a - "alt" >> c
        self.assertEqual(a.successors, {"default": b, "alt": c})

    def test_chaining_returns_target(self):
        a, b, c = Node(), Node(), Node()
        a >> b >> c
        self.assertIs(a.successors["default"], b)
        self.assertIs(b.successors["default"], c)

    def test_non_string_action_rejected(self):
        with self.assertRaises(TypeError):
            Node() - 1

    def test_overwrite_warns_and_replaces(self):
        a, b, c = Node(), Node(), Node()
        a.on("go").next(b)
        with self.assertWarns(UserWarning) as ctx:
            a.on("go").next(c)
        self.assertIn("Overwriting successor for action 'go'", str(ctx.warning))
        self.assertIs(a.successors["go"], c)

    def test_first_registration_does_not_warn(self):
        a = Node()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            a.on("x").next(Node())
            a.next(Node())


if __name__ == '__main__':
    unittest.main()
