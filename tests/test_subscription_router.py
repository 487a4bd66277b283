import unittest

try:
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from routers.subscription_agent import create_subscription_router

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


class _FakeSubscriptionService:
    def __init__(self) -> None:
        self.last_run_call = None
        self.last_batch_call = None

    def list_jobs(self):
        return {"pause": "pause", "resume": "resume"}

    def now_id(self):
        return "20261018-120000"

    def run_account(self, action, account_id, run_id="", *, debug_mode=False, workflow_timeout_ms=None):
        self.last_run_call = {
            "action": action,
            "account_id": account_id,
            "run_id": run_id,
            "debug_mode": debug_mode,
            "workflow_timeout_ms": workflow_timeout_ms,
        }
        return {"ok": True, "job": action, "run_id": run_id, "account_id": account_id, "outcome": "resumed"}

    def run_batch(self, action, account_ids=None, run_id="", *, max_workers=None, debug_mode=False):
        self.last_batch_call = {
            "action": action,
            "account_ids": account_ids,
            "run_id": run_id,
            "max_workers": max_workers,
        }
        return {"ok": True, "job": action, "run_id": run_id, "count": 0, "items": []}

    def get_status(self):
        return {"ok": True, "running": [], "accounts": {}}

    def get_runtime_events(self, limit=200, day="", account_id=""):
        return {"ok": True, "count": 0, "items": [], "filters": [limit, day, account_id]}

    def get_results(self, limit=200, account_id=""):
        return {"ok": True, "count": 0, "items": []}


@unittest.skipUnless(DEPS_AVAILABLE, "fastapi is not installed in this environment")
class SubscriptionRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = _FakeSubscriptionService()
        self.missing = []
        app = FastAPI()
        app.include_router(create_subscription_router(self.service, "s3cret", lambda: list(self.missing)))
        self.client = TestClient(app)

    def test_run_requires_secret(self) -> None:
        response = self.client.post("/subscription-agent/run/resume", json={"account_id": "acc-1"})
        self.assertEqual(response.status_code, 401)
        self.assertIsNone(self.service.last_run_call)

    def test_run_with_header_secret(self) -> None:
        response = self.client.post(
            "/subscription-agent/run/resume",
            json={"account_id": "acc-1", "run_id": "r-1", "workflow_timeout_ms": 60000},
            headers={"x-job-secret": "s3cret"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["outcome"], "resumed")
        self.assertEqual(self.service.last_run_call["run_id"], "r-1")
        self.assertEqual(self.service.last_run_call["workflow_timeout_ms"], 60000)

    def test_run_with_payload_secret_and_generated_run_id(self) -> None:
        response = self.client.post(
            "/subscription-agent/run/pause",
            json={"account_id": "acc-1", "payload": {"secret": "s3cret"}},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.service.last_run_call["run_id"], "20261018-120000")

    def test_bearer_secret(self) -> None:
        response = self.client.get("/subscription-agent/jobs", headers={"authorization": "Bearer s3cret"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"jobs": ["pause", "resume"]})

    def test_unknown_job_is_404(self) -> None:
        response = self.client.post(
            "/subscription-agent/run/cancel",
            json={"account_id": "acc-1"},
            headers={"x-job-secret": "s3cret"},
        )
        self.assertEqual(response.status_code, 404)

    def test_missing_config_is_400(self) -> None:
        self.missing = ["adspower_api_url"]
        response = self.client.post(
            "/subscription-agent/run/resume",
            json={"account_id": "acc-1"},
            headers={"x-job-secret": "s3cret"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("adspower_api_url", response.json()["detail"])

    def test_timeout_below_minimum_is_rejected(self) -> None:
        response = self.client.post(
            "/subscription-agent/run/resume",
            json={"account_id": "acc-1", "workflow_timeout_ms": 5},
            headers={"x-job-secret": "s3cret"},
        )
        self.assertEqual(response.status_code, 422)

    def test_batch_passes_selection(self) -> None:
        response = self.client.post(
            "/subscription-agent/batch/pause",
            json={"account_ids": ["acc-1", "acc-2"], "max_workers": 2},
            headers={"x-job-secret": "s3cret"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.service.last_batch_call["account_ids"], ["acc-1", "acc-2"])
        self.assertEqual(self.service.last_batch_call["max_workers"], 2)

    def test_empty_batch_means_all_accounts(self) -> None:
        self.client.post("/subscription-agent/batch/resume", json={}, headers={"x-job-secret": "s3cret"})
        self.assertIsNone(self.service.last_batch_call["account_ids"])

    def test_read_endpoints_via_ingress(self) -> None:
        headers = {"x-ingress-path": "/api/hassio_ingress/abc"}
        self.assertEqual(self.client.get("/subscription-agent/status", headers=headers).status_code, 200)
        events = self.client.get(
            "/subscription-agent/events?limit=5&day=2026-10-18&account_id=acc-1",
            headers=headers,
        )
        self.assertEqual(events.json()["filters"], [5, "2026-10-18", "acc-1"])
        self.assertEqual(self.client.get("/subscription-agent/results", headers=headers).status_code, 200)
        locales = self.client.get("/subscription-agent/locales", headers=headers).json()["locales"]
        self.assertIn("en", [item["code"] for item in locales])


if __name__ == "__main__":
    unittest.main()
