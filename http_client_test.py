from __future__ import annotations

import socket
import unittest

import requests

from fixture_server import FixtureAdapter, FixtureServer, fixture_session
from http_client import (
    FilePart,
    HTTPStatusError,
    RequestConnectionError,
    RequestError,
    RequestExecutor,
    RequestSpec,
    RequestTimeout,
    RetryExhaustedError,
    RetryPolicy,
    USER_AGENT,
)


FAST_RETRIES = RetryPolicy(max_attempts=3, min_backoff_ms=1, max_backoff_ms=5)
API = "http://api.fixture.test"


class RetryPolicyTest(unittest.TestCase):
    def test_zero_or_unset_attempts_means_one_attempt(self) -> None:
        for value in (None, 0, 1):
            with self.subTest(max_attempts=value):
                self.assertEqual(RetryPolicy(max_attempts=value).attempts, 1)
        self.assertEqual(RetryPolicy(max_attempts=5).attempts, 5)

    def test_backoff_is_exponential_and_bounded(self) -> None:
        policy = RetryPolicy(min_backoff_ms=100, max_backoff_ms=300)
        delays = [policy.backoff_seconds(attempt) for attempt in range(1, 5)]
        self.assertEqual(delays, [0.1, 0.2, 0.3, 0.3])

    def test_default_backoff_starts_at_one_second(self) -> None:
        policy = RetryPolicy()
        self.assertEqual(policy.backoff_seconds(1), 1.0)
        self.assertEqual(policy.backoff_seconds(2), 2.0)


class RequestSpecTest(unittest.TestCase):
    def test_json_body_cannot_be_mixed_with_form_data(self) -> None:
        with self.assertRaises(ValueError):
            RequestSpec(url=API, json_body={"a": 1}, form_fields={"b": "2"})

    def test_kwargs_are_fresh_for_every_attempt(self) -> None:
        spec = RequestSpec(url=API, method="POST", file_parts={"payload": FilePart("p.zip", b"zip")})
        first = spec.request_kwargs()
        second = spec.request_kwargs()
        self.assertIsNot(first["files"], second["files"])
        self.assertEqual(first["headers"]["User-Agent"], USER_AGENT)

    def test_empty_form_values_are_dropped(self) -> None:
        spec = RequestSpec(url=API, method="POST", form_fields={"keep": "1", "drop": None})
        self.assertEqual(spec.request_kwargs()["data"], {"keep": "1"})


class RetrySemanticsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.delays: list = []

    def _executor(self, adapter: FixtureAdapter) -> RequestExecutor:
        return RequestExecutor(session=fixture_session(adapter, API), sleep=self.delays.append)

    def test_failing_twice_then_succeeding_returns_success(self) -> None:
        with FixtureServer() as server:
            executor = RequestExecutor(sleep=self.delays.append)
            response = executor.execute(RequestSpec(url=server.url("/flaky/twice?failures=2")), FAST_RETRIES)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "ok after 3")
        self.assertEqual(len(self.delays), 2)

    def test_failing_every_attempt_raises_after_the_last_one(self) -> None:
        adapter = FixtureAdapter({f"{API}/boom": 503})
        policy = RetryPolicy(max_attempts=4, min_backoff_ms=1, max_backoff_ms=2)

        with self.assertRaises(RetryExhaustedError) as ctx:
            self._executor(adapter).execute(RequestSpec(url=f"{API}/boom"), policy)

        self.assertEqual(adapter.count(f"{API}/boom"), 4)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertIsInstance(ctx.exception.last_error, HTTPStatusError)
        self.assertEqual(len(self.delays), 3)

    def test_unset_or_zero_attempts_make_exactly_one_request(self) -> None:
        for value in (None, 0):
            with self.subTest(max_attempts=value):
                adapter = FixtureAdapter({f"{API}/boom": 500})
                with self.assertRaises(HTTPStatusError) as ctx:
                    self._executor(adapter).execute(
                        RequestSpec(url=f"{API}/boom"), RetryPolicy(max_attempts=value)
                    )
                self.assertEqual(adapter.count(f"{API}/boom"), 1)
                self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(self.delays, [])

    def test_client_errors_are_not_retried(self) -> None:
        adapter = FixtureAdapter({f"{API}/gone": 404})
        with self.assertRaises(HTTPStatusError) as ctx:
            self._executor(adapter).execute(RequestSpec(url=f"{API}/gone"), RetryPolicy(max_attempts=5))

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertFalse(ctx.exception.retryable)
        self.assertIn("status 404", ctx.exception.body)
        self.assertEqual(adapter.count(f"{API}/gone"), 1)

    def test_network_errors_are_retried(self) -> None:
        adapter = FixtureAdapter({f"{API}/reset": requests.ConnectionError("connection reset")})
        with self.assertRaises(RetryExhaustedError) as ctx:
            self._executor(adapter).execute(RequestSpec(url=f"{API}/reset"), FAST_RETRIES)

        self.assertIsInstance(ctx.exception.last_error, RequestConnectionError)
        self.assertIsNone(ctx.exception.status_code)
        self.assertEqual(adapter.count(f"{API}/reset"), 3)

    def test_invalid_urls_fail_without_retrying(self) -> None:
        executor = RequestExecutor(sleep=self.delays.append)
        with self.assertRaises(RequestError) as ctx:
            executor.execute(RequestSpec(url="not a url"), FAST_RETRIES)

        self.assertNotIsInstance(ctx.exception, RetryExhaustedError)
        self.assertEqual(self.delays, [])


class TimeoutTest(unittest.TestCase):
    def test_slow_response_raises_timeout_error(self) -> None:
        with FixtureServer() as server:
            with self.assertRaises(RequestTimeout) as ctx:
                RequestExecutor().execute(
                    RequestSpec(url=server.url("/slow?delay=0.5")),
                    RetryPolicy(timeout_ms=100),
                )

        self.assertIsInstance(ctx.exception, TimeoutError)
        self.assertIn("Timeout when fetching", str(ctx.exception))

    def test_refused_connection_is_not_a_timeout(self) -> None:
        probe = socket.socket()
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()

        with self.assertRaises(RequestConnectionError) as ctx:
            RequestExecutor().execute(RequestSpec(url=f"http://127.0.0.1:{port}/"), RetryPolicy(timeout_ms=2000))

        self.assertNotIsInstance(ctx.exception, RequestTimeout)

    def test_timed_out_attempts_are_retried(self) -> None:
        delays: list = []
        with FixtureServer() as server:
            with self.assertRaises(RetryExhaustedError) as ctx:
                RequestExecutor(sleep=delays.append).execute(
                    RequestSpec(url=server.url("/slow?delay=0.4")),
                    RetryPolicy(max_attempts=2, min_backoff_ms=1, timeout_ms=100),
                )

        self.assertIsInstance(ctx.exception.last_error, RequestTimeout)
        self.assertEqual(len(delays), 1)


class BodyEncodingTest(unittest.TestCase):
    def setUp(self) -> None:
        self.server = FixtureServer().start()
        self.executor = RequestExecutor()

    def tearDown(self) -> None:
        self.server.close()

    def test_json_body(self) -> None:
        response = self.executor.execute(
            RequestSpec(url=self.server.url("/echo"), method="POST", json_body={"project": "web"})
        )
        payload = response.json()
        self.assertEqual(payload["content_type"], "application/json")
        self.assertEqual(payload["json"], {"project": "web"})
        self.assertEqual(payload["user_agent"], USER_AGENT)

    def test_url_encoded_form_fields(self) -> None:
        response = self.executor.execute(
            RequestSpec(url=self.server.url("/echo"), method="POST", form_fields={"a": "1", "b": "two"})
        )
        payload = response.json()
        self.assertEqual(payload["content_type"], "application/x-www-form-urlencoded")
        self.assertEqual(payload["form"], {"a": "1", "b": "two"})

    def test_multipart_with_file_parts_and_fields(self) -> None:
        response = self.executor.execute(
            RequestSpec(
                url=self.server.url("/echo"),
                method="POST",
                form_fields={"hash": "abc"},
                file_parts={"payload": FilePart("payload.zip", b"PK\x05\x06" + b"\x00" * 18, "application/zip")},
            )
        )
        payload = response.json()
        self.assertEqual(payload["content_type"], "multipart/form-data")
        self.assertEqual(payload["form"], {"hash": "abc"})
        self.assertEqual(
            payload["files"]["payload"],
            {"filename": "payload.zip", "content_type": "application/zip", "size": 22},
        )


if __name__ == "__main__":
    unittest.main()
