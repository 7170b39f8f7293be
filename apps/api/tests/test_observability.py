import json
import unittest
from unittest.mock import MagicMock, patch

from sqlalchemy.exc import OperationalError

from core.logging_utils import log_structured, request_id_from_request
from core.observability import COUNTERS, METRIC_TRANSITION_CONFLICT, increment_metric, unexpected_exception_metric
from routers.health import ready
from tests._helpers import make_request


class StructuredLoggingTests(unittest.TestCase):
    def test_only_allowed_fields_are_logged_and_secrets_redacted(self) -> None:
        with self.assertLogs("consent_engine.api", level="INFO") as captured:
            log_structured(
                "contract.executed",
                contract_id="CONTRACT-1",
                action="read",
                reason="bearer abc123",
                condition="data_type == 'lab_results'",
                purpose="oncology referral",
            )
        line = captured.output[0]
        self.assertIn("event=contract.executed", line)
        self.assertIn("contract_id=CONTRACT-1", line)
        self.assertIn("reason=[REDACTED]", line)
        self.assertNotIn("oncology", line)
        self.assertNotIn("lab_results", line)

    def test_request_id_is_taken_from_header_or_generated(self) -> None:
        self.assertEqual(request_id_from_request(make_request(headers={"X-Request-Id": " abc "})), "abc")
        generated = request_id_from_request(make_request())
        self.assertEqual(len(generated), 36)


class CounterTests(unittest.TestCase):
    def setUp(self) -> None:
        COUNTERS.reset()

    def test_increment_and_snapshot(self) -> None:
        increment_metric(METRIC_TRANSITION_CONFLICT, reason="stale_status")
        increment_metric(METRIC_TRANSITION_CONFLICT)
        unexpected_exception_metric("RuntimeError")

        snapshot = COUNTERS.snapshot()
        self.assertEqual(snapshot[METRIC_TRANSITION_CONFLICT], 2)
        self.assertEqual(snapshot["runtime.unexpected_exception.RuntimeError"], 1)
        with self.assertRaises(ValueError):
            COUNTERS.increment(METRIC_TRANSITION_CONFLICT, -1)


class ReadinessTests(unittest.TestCase):
    def test_ready_when_database_answers(self) -> None:
        connection = MagicMock()
        connection.__enter__.return_value = connection
        with patch("routers.health.engine") as engine:
            engine.connect.return_value = connection
            body = ready()
        self.assertEqual(body["status"], "ready")
        self.assertEqual(body["checks"]["db"], "ok")
        self.assertIn(body["checks"]["notifications"], {"webhook", "log_only"})

    def test_not_ready_when_database_is_down(self) -> None:
        with patch("routers.health.engine") as engine:
            engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))
            response = ready()
        self.assertEqual(response.status_code, 503)
        payload = json.loads(response.body.decode("utf-8"))
        self.assertEqual(payload["status"], "not_ready")
        self.assertEqual(payload["checks"]["db"], "failed")


if __name__ == "__main__":
    unittest.main()
