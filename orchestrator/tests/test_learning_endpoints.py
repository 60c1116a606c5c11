import io
import json
import os
import unittest
from contextlib import contextmanager, redirect_stdout
from datetime import datetime, timezone
from unittest import mock

import azure.functions as func

import behavior_targets
import learning_config
import learning_runs
import seed_behavior_targets
import target_learning_run
import target_learning_timer
import update_targets as update_targets_cli
from shared_code import learning_loop, learning_reports
from shared_code.learning_config import ConfigResolver
from shared_code.learning_loop import LearningOptions, LearningRunResult
from shared_code.target_store import InMemoryTargetStore, TargetScope


def make_request(
    url: str,
    body: object | None = None,
    method: str = "POST",
    params: dict | None = None,
    route_params: dict | None = None,
    headers: dict | None = None,
) -> func.HttpRequest:
    raw = json.dumps(body).encode("utf-8") if body is not None else b""
    return func.HttpRequest(
        method=method,
        url=url,
        headers={"Content-Type": "application/json", **(headers or {})},
        params=params or {},
        route_params=route_params or {},
        body=raw,
    )


class StubSettings:
    def __init__(self, values=None) -> None:
        self.values = dict(values or {})

    def get(self, key, default=None):
        return self.values.get(key, default)

    def put(self, key, value) -> None:
        self.values[key] = value


NO_SECRET = {"ADMIN_SHARED_SECRET": ""}


@contextmanager
def patched_behavior_db():
    """Behavior database with no stored config and no pending rewards."""
    conn = mock.MagicMock()
    cursor = mock.MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    cursor.fetchone.return_value = None
    cursor.fetchall.return_value = []
    with mock.patch.object(learning_loop.db, "get_connection") as conn_mock, mock.patch.object(
        learning_loop.learning_reports, "archive_run"
    ):
        conn_mock.return_value.__enter__.return_value = conn
        yield cursor


class TargetLearningRunTests(unittest.TestCase):
    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    def test_options_preflight(self) -> None:
        resp = target_learning_run.main(make_request("/learning/targets/run", method="OPTIONS"))

        self.assertEqual(resp.status_code, 204)
        self.assertIn("POST", resp.headers["Access-Control-Allow-Methods"])

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    def test_get_not_allowed(self) -> None:
        resp = target_learning_run.main(make_request("/learning/targets/run", method="GET"))

        self.assertEqual(resp.status_code, 405)

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "false"}, clear=False)
    @mock.patch.object(target_learning_run, "update_targets")
    def test_disabled_returns_503(self, run_mock: mock.Mock) -> None:
        resp = target_learning_run.main(make_request("/learning/targets/run", {}))

        self.assertEqual(resp.status_code, 503)
        run_mock.assert_not_called()

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    @mock.patch.object(target_learning_run, "update_targets")
    def test_bad_options_return_400(self, run_mock: mock.Mock) -> None:
        resp = target_learning_run.main(make_request("/learning/targets/run", {"limit": -1}))

        self.assertEqual(resp.status_code, 400)
        run_mock.assert_not_called()

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    @mock.patch.object(target_learning_run, "update_targets")
    def test_run_returns_result_body(self, run_mock: mock.Mock) -> None:
        run_mock.return_value = LearningRunResult(selected=3, processed=2, created=1, errors=["Error updating targets"])

        resp = target_learning_run.main(
            make_request("/learning/targets/run", {"interactionId": "call-1", "learningRate": 0.05})
        )

        self.assertEqual(resp.status_code, 200)
        data = json.loads(resp.get_body())
        self.assertEqual(data["processed"], 2)
        self.assertEqual(data["errors"], ["Error updating targets"])
        options = run_mock.call_args.args[0]
        self.assertEqual(options.interaction_id, "call-1")
        self.assertEqual(options.learning_rate, 0.05)

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    @mock.patch.object(target_learning_run, "update_targets")
    def test_empty_body_runs_with_defaults(self, run_mock: mock.Mock) -> None:
        run_mock.return_value = LearningRunResult()

        resp = target_learning_run.main(make_request("/learning/targets/run"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(run_mock.call_args.args[0], LearningOptions())

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    @mock.patch.object(target_learning_run, "update_targets", side_effect=RuntimeError("db down"))
    def test_fatal_error_returns_500(self, _run_mock: mock.Mock) -> None:
        resp = target_learning_run.main(make_request("/learning/targets/run", {}))

        self.assertEqual(resp.status_code, 500)

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    @mock.patch.object(target_learning_run, "update_targets")
    def test_string_dry_run_flag_returns_400(self, run_mock: mock.Mock) -> None:
        resp = target_learning_run.main(make_request("/learning/targets/run", {"dryRun": "false"}))

        self.assertEqual(resp.status_code, 400)
        run_mock.assert_not_called()

    @mock.patch.dict(os.environ, {**NO_SECRET, "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    def test_override_above_stored_max_confidence_returns_400(self) -> None:
        with patched_behavior_db() as cursor:
            resp = target_learning_run.main(make_request("/learning/targets/run", {"minConfidence": 0.99}))

        self.assertEqual(resp.status_code, 400)
        self.assertIn("minConfidence", resp.get_body().decode("utf-8"))
        cursor.fetchall.assert_not_called()

    @mock.patch.dict(os.environ, {"ADMIN_SHARED_SECRET": "s3cret", "TARGET_LEARNING_ENABLED": "true"}, clear=False)
    @mock.patch.object(target_learning_run, "update_targets")
    def test_admin_key_required_when_configured(self, run_mock: mock.Mock) -> None:
        run_mock.return_value = LearningRunResult()

        denied = target_learning_run.main(make_request("/learning/targets/run", {}))
        wrong = target_learning_run.main(make_request("/learning/targets/run", {}, headers={"X-Admin-Key": "nope"}))
        allowed = target_learning_run.main(make_request("/learning/targets/run", {}, headers={"X-Admin-Key": "s3cret"}))

        self.assertEqual(denied.status_code, 401)
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(allowed.status_code, 200)
        run_mock.assert_called_once()


class TargetLearningTimerTests(unittest.TestCase):
    @mock.patch.dict(os.environ, {"TARGET_LEARNING_ENABLED": "false"}, clear=False)
    @mock.patch.object(target_learning_timer, "update_targets")
    def test_disabled_timer_does_nothing(self, run_mock: mock.Mock) -> None:
        target_learning_timer.main(mock.Mock(past_due=False))

        run_mock.assert_not_called()

    @mock.patch.dict(os.environ, {"TARGET_LEARNING_ENABLED": "true", "TARGET_LEARNING_BATCH_LIMIT": "25"}, clear=False)
    @mock.patch.object(target_learning_timer, "update_targets")
    def test_timer_runs_with_configured_limit(self, run_mock: mock.Mock) -> None:
        run_mock.return_value = LearningRunResult(errors=["boom"])

        with self.assertLogs(level="WARNING"):
            target_learning_timer.main(mock.Mock(past_due=True))

        self.assertEqual(run_mock.call_args.args[0].limit, 25)

    @mock.patch.dict(os.environ, {"TARGET_LEARNING_BATCH_LIMIT": "lots"}, clear=False)
    def test_invalid_batch_limit_falls_back(self) -> None:
        self.assertEqual(target_learning_timer._batch_limit(), 100)


class LearningConfigEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = StubSettings({"learning.target_learn": {"learningRate": 0.2}})
        patcher = mock.patch.object(learning_config, "_resolver", ConfigResolver(self.settings))
        patcher.start()
        self.addCleanup(patcher.stop)

    @mock.patch.dict(os.environ, NO_SECRET, clear=False)
    def test_get_returns_effective_and_stored_config(self) -> None:
        resp = learning_config.main(make_request("/learning/config", method="GET"))

        self.assertEqual(resp.status_code, 200)
        data = json.loads(resp.get_body())
        self.assertEqual(data["key"], "learning.target_learn")
        self.assertEqual(data["config"]["learningRate"], 0.2)
        self.assertEqual(data["defaults"]["learningRate"], 0.1)
        self.assertEqual(data["stored"], {"learningRate": 0.2})

    @mock.patch.dict(os.environ, {**NO_SECRET, "ADMIN_EDIT_ENABLED": "false"}, clear=False)
    def test_put_blocked_without_edit_flag(self) -> None:
        resp = learning_config.main(make_request("/learning/config", {"tolerance": 0.2}, method="PUT"))

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.settings.values["learning.target_learn"], {"learningRate": 0.2})

    @mock.patch.dict(os.environ, {**NO_SECRET, "ADMIN_EDIT_ENABLED": "true"}, clear=False)
    def test_put_merges_and_stores(self) -> None:
        resp = learning_config.main(make_request("/learning/config", {"tolerance": 0.2}, method="PUT"))

        self.assertEqual(resp.status_code, 200)
        stored = self.settings.values["learning.target_learn"]
        self.assertEqual(stored["learningRate"], 0.2)
        self.assertEqual(stored["tolerance"], 0.2)

    @mock.patch.dict(os.environ, {**NO_SECRET, "ADMIN_EDIT_ENABLED": "true"}, clear=False)
    def test_put_rejects_invalid_config(self) -> None:
        resp = learning_config.main(make_request("/learning/config", {"learningRate": "fast"}, method="PUT"))

        self.assertEqual(resp.status_code, 400)
        self.assertIn("Invalid learning config", resp.get_body().decode("utf-8"))

    @mock.patch.dict(os.environ, {**NO_SECRET, "ADMIN_EDIT_ENABLED": "true"}, clear=False)
    def test_put_rejects_non_object_body(self) -> None:
        resp = learning_config.main(make_request("/learning/config", [1, 2], method="PUT"))

        self.assertEqual(resp.status_code, 400)


def _target_row(id_: str, parameter_id: str, effective_until=None):
    created = datetime(2025, 11, 28, tzinfo=timezone.utc)
    return (id_, parameter_id, "INDIVIDUAL", "caller-1", 0.55, 0.62, "LEARNED", 3, created, created, effective_until, None, None)


class BehaviorTargetsEndpointTests(unittest.TestCase):
    def test_missing_caller_returns_400(self) -> None:
        resp = behavior_targets.main(make_request("/behavior-targets", method="GET"))

        self.assertEqual(resp.status_code, 400)

    @mock.patch.object(behavior_targets, "get_connection")
    def test_lists_active_targets_and_history(self, conn_mock: mock.Mock) -> None:
        conn = mock.MagicMock()
        cursor = mock.MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        conn_mock.return_value.__enter__.return_value = conn
        cursor.fetchall.side_effect = [
            [_target_row("t-2", "BEH-WARMTH")],
            [_target_row("t-2", "BEH-WARMTH"), _target_row("t-1", "BEH-WARMTH", effective_until=datetime(2025, 11, 28, tzinfo=timezone.utc))],
        ]

        resp = behavior_targets.main(
            make_request(
                "/behavior-targets/caller-1",
                method="GET",
                params={"parameterId": "BEH-WARMTH"},
                route_params={"callerId": "caller-1"},
            )
        )

        self.assertEqual(resp.status_code, 200)
        data = json.loads(resp.get_body())
        self.assertEqual(data["callerId"], "caller-1")
        self.assertEqual(data["targets"][0]["parameterId"], "BEH-WARMTH")
        self.assertEqual(data["targets"][0]["targetValue"], 0.55)
        self.assertEqual([t["id"] for t in data["history"]], ["t-2", "t-1"])

    @mock.patch.object(behavior_targets, "get_connection", side_effect=RuntimeError("Missing BEHAVIOR_DB_HOST"))
    def test_database_failure_returns_500(self, _conn_mock: mock.Mock) -> None:
        resp = behavior_targets.main(
            make_request("/behavior-targets/caller-1", method="GET", route_params={"callerId": "caller-1"})
        )

        self.assertEqual(resp.status_code, 500)


class SeedBehaviorTargetsTests(unittest.TestCase):
    @mock.patch.dict(os.environ, {**NO_SECRET, "ALLOW_TEST_SEED": "false"}, clear=False)
    def test_seed_disabled_returns_403(self) -> None:
        resp = seed_behavior_targets.main(make_request("/behavior-targets/seed", {}))

        self.assertEqual(resp.status_code, 403)

    def test_seed_is_idempotent(self) -> None:
        store = InMemoryTargetStore()

        first = seed_behavior_targets.seed_global_targets(store)
        second = seed_behavior_targets.seed_global_targets(store)

        self.assertEqual(first, {"created": 7, "existing": 0})
        self.assertEqual(second, {"created": 0, "existing": 7})
        warmth = store.find_active("BEH-WARMTH", TargetScope.GLOBAL)
        self.assertEqual(warmth.target_value, 0.5)
        self.assertEqual(warmth.confidence, 1.0)
        self.assertEqual(len(store.list_active(TargetScope.INDIVIDUAL, "caller-1")), 0)


class LearningRunsEndpointTests(unittest.TestCase):
    @mock.patch.object(learning_reports, "list_reports", return_value=[{"runId": "r1"}])
    def test_lists_reports_with_clamped_limit(self, list_mock: mock.Mock) -> None:
        resp = learning_runs.main(make_request("/learning/runs", method="GET", params={"limit": "500"}))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(json.loads(resp.get_body()), {"items": [{"runId": "r1"}]})
        list_mock.assert_called_once_with(limit=100)

    def test_bad_limit_returns_400(self) -> None:
        resp = learning_runs.main(make_request("/learning/runs", method="GET", params={"limit": "ten"}))

        self.assertEqual(resp.status_code, 400)


class LearningReportsTests(unittest.TestCase):
    @mock.patch.dict(os.environ, {"LEARNING_REPORTS_ENABLED": "false"}, clear=False)
    @mock.patch.object(learning_reports, "get_container_client")
    def test_archive_disabled_writes_nothing(self, container_mock: mock.Mock) -> None:
        self.assertIsNone(learning_reports.archive_run({"runId": "r1", "startedAt": "2025-11-28T12:00:00+00:00"}))
        container_mock.assert_not_called()

    @mock.patch.dict(os.environ, {"LEARNING_REPORTS_ENABLED": "true"}, clear=False)
    @mock.patch.object(learning_reports, "get_container_client")
    def test_archive_writes_dated_blob(self, container_mock: mock.Mock) -> None:
        path = learning_reports.archive_run({"runId": "r1", "startedAt": "2025-11-28T12:00:00+00:00"})

        self.assertEqual(path, "learning-runs/2025-11-28/120000000000-r1.json")
        container_mock.return_value.get_blob_client.assert_called_once_with(path)

    @mock.patch.dict(os.environ, {"LEARNING_REPORTS_ENABLED": "true"}, clear=False)
    @mock.patch.object(learning_reports, "get_container_client", side_effect=RuntimeError("no storage"))
    def test_archive_failure_is_logged_not_raised(self, _container_mock: mock.Mock) -> None:
        with self.assertLogs("shared_code.learning_reports", level="ERROR"):
            self.assertIsNone(learning_reports.archive_run({"runId": "r1", "startedAt": ""}))


    def test_report_names_sort_by_start_time(self) -> None:
        earlier = learning_reports.report_path("zzz", "2025-11-28T09:05:00.000001+00:00")
        later = learning_reports.report_path("aaa", "2025-11-28T13:00:00+02:00")

        self.assertEqual(later, "learning-runs/2025-11-28/110000000000-aaa.json")
        self.assertLess(earlier, later)

    @mock.patch.object(learning_reports, "get_container_client")
    def test_list_reports_downloads_only_newest_blobs(self, container_mock: mock.Mock) -> None:
        blobs = []
        for i in range(500):
            blob = mock.Mock()
            blob.name = learning_reports.report_path(f"run-{i:03d}", f"2025-11-{1 + i % 28:02d}T{i % 24:02d}:00:00+00:00")
            blobs.append(blob)
        readme = mock.Mock()
        readme.name = "learning-runs/README.txt"
        blobs.append(readme)
        cc = container_mock.return_value
        cc.list_blobs.return_value = blobs
        cc.get_blob_client.side_effect = lambda name: mock.Mock(
            **{"download_blob.return_value.readall.return_value": json.dumps({"blob": name}).encode("utf-8")}
        )

        reports = learning_reports.list_reports(limit=3)

        newest = sorted((b.name for b in blobs if b.name.endswith(".json")), reverse=True)[:3]
        self.assertEqual([r["blob"] for r in reports], newest)
        self.assertEqual(cc.get_blob_client.call_count, 3)

    @mock.patch.object(learning_reports, "get_container_client")
    def test_unreadable_report_is_skipped(self, container_mock: mock.Mock) -> None:
        cc = container_mock.return_value
        names = ["learning-runs/2025-11-28/120000000000-b.json", "learning-runs/2025-11-27/120000000000-a.json"]
        cc.list_blobs.return_value = [mock.Mock() for _ in names]
        for blob, name in zip(cc.list_blobs.return_value, names):
            blob.name = name
        broken = mock.Mock(**{"download_blob.return_value.readall.return_value": b"{oops"})
        good = mock.Mock(**{"download_blob.return_value.readall.return_value": b'{"runId": "a"}'})
        cc.get_blob_client.side_effect = [broken, good]

        with self.assertLogs("shared_code.learning_reports", level="WARNING"):
            reports = learning_reports.list_reports(limit=1)

        self.assertEqual(reports, [{"runId": "a"}])


class UpdateTargetsCliTests(unittest.TestCase):
    @mock.patch.object(update_targets_cli, "update_targets")
    def test_clean_run_exits_zero_and_prints_result(self, run_mock: mock.Mock) -> None:
        run_mock.return_value = LearningRunResult(processed=4)
        out = io.StringIO()

        with redirect_stdout(out):
            code = update_targets_cli.main(["--call=call-9", "--rate=0.05", "--plan"])

        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out.getvalue())["processed"], 4)
        options = run_mock.call_args.args[0]
        self.assertEqual(options, LearningOptions("call-9", 100, 0.05, None, True))

    @mock.patch.object(update_targets_cli, "update_targets")
    def test_per_reward_errors_exit_one(self, run_mock: mock.Mock) -> None:
        run_mock.return_value = LearningRunResult(errors=["Error updating targets for interaction call-1"])

        with redirect_stdout(io.StringIO()):
            self.assertEqual(update_targets_cli.main([]), 1)

    @mock.patch.object(update_targets_cli, "update_targets", side_effect=RuntimeError("Missing BEHAVIOR_DB_HOST"))
    def test_fatal_error_exits_one(self, _run_mock: mock.Mock) -> None:
        self.assertEqual(update_targets_cli.main([]), 1)

    def test_override_that_does_not_fit_stored_config_is_a_usage_error(self) -> None:
        stderr = io.StringIO()

        with patched_behavior_db() as cursor, redirect_stdout(io.StringIO()), mock.patch("sys.stderr", stderr):
            with self.assertRaises(SystemExit) as ctx:
                update_targets_cli.main(["--min-confidence=0.99"])

        self.assertEqual(ctx.exception.code, 2)
        self.assertIn("minConfidence", stderr.getvalue())
        cursor.fetchall.assert_not_called()

    def test_invalid_arguments_are_rejected(self) -> None:
        for argv in (["--limit=0"], ["--rate=1.5"], ["--min-confidence=-0.1"]):
            with self.subTest(argv=argv):
                with redirect_stdout(io.StringIO()), mock.patch("sys.stderr", io.StringIO()):
                    with self.assertRaises(SystemExit):
                        update_targets_cli.main(argv)


if __name__ == "__main__":
    unittest.main()
