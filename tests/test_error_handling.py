import unittest
from unittest.mock import patch

from gare.db import close_db
from gare.domain.results import ErrorKind, WorkflowError
from gare.errors import ConflictError, NotFoundError, UserActionError, ValidationError, app_error_from_workflow
from gare.ui_strings import error_message
from tests.helpers.temp_db import TempDbSandbox
from tests.helpers.workflow_case import build_temp_app


class ErrorMappingTest(unittest.TestCase):
    def test_workflow_kinds_map_to_http_errors(self) -> None:
        cases = {
            ErrorKind.NOT_FOUND: (NotFoundError, 404),
            ErrorKind.INVALID_TRANSITION: (UserActionError, 409),
            ErrorKind.EVALUATION_NOT_READY: (UserActionError, 409),
            ErrorKind.CONCURRENCY_CONFLICT: (ConflictError, 409),
            ErrorKind.RATIONALE_REQUIRED: (ValidationError, 400),
            ErrorKind.EMPTY_REASON: (ValidationError, 400),
        }
        for kind, (error_cls, status) in cases.items():
            with self.subTest(kind=kind):
                error = app_error_from_workflow(WorkflowError(kind=kind, message_key=kind.value))
                self.assertIsInstance(error, error_cls)
                self.assertEqual(error.http_status, status)
                self.assertEqual(error.code, kind.value)

    def test_concurrency_conflict_is_retryable(self) -> None:
        error = app_error_from_workflow(
            WorkflowError(kind=ErrorKind.CONCURRENCY_CONFLICT, message_key="concurrency_conflict")
        )
        payload = error.to_response_payload("req-1")
        self.assertTrue(payload["retryable"])
        self.assertEqual(payload["request_id"], "req-1")
        self.assertEqual(payload["message"], error_message("concurrency_conflict"))


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        self.app = build_temp_app(self._temp_db)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_health_reports_scheduler_state(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["db"], "sqlite")
        self.assertFalse(payload["scheduler"]["running"])
        self.assertIsNone(payload["scheduler"]["last_run"])
        self.assertTrue(response.headers.get("X-Request-Id"))

    def test_request_id_header_is_echoed(self) -> None:
        response = self.client.get("/api/tenders", headers={"X-Request-Id": "req-gare-42"})
        self.assertEqual(response.headers.get("X-Request-Id"), "req-gare-42")

    def test_not_found_payload(self) -> None:
        response = self.client.get("/api/tenders/404")
        self.assertEqual(response.status_code, 404)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "not_found")
        self.assertEqual(payload.get("message"), error_message("tender_not_found"))
        self.assertTrue((payload.get("request_id") or "").strip())

    def test_stack_trace_not_exposed_for_unhandled_error(self) -> None:
        with patch(
            "gare.application.tender_service.TenderService.list_tenders",
            side_effect=RuntimeError("stack_secret_token"),
        ):
            response = self.client.get("/api/tenders")

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        self.assertTrue(payload.get("retryable"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("stack_secret_token", body)


if __name__ == "__main__":
    unittest.main()
