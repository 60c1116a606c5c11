"""Archive learning-run reports as JSON blobs for audit and the admin UI."""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from azure.storage.blob import BlobServiceClient, ContentSettings

from .http import env_flag


_logger = logging.getLogger(__name__)

REPORT_PREFIX = "learning-runs/"


def _resolve_blob_conn() -> Tuple[Optional[str], Optional[str]]:
    """Return the storage connection string and the env var that provided it."""
    for name in ("STORAGE_CONNECTION_STRING", "AZURE_STORAGE_CONNECTION_STRING", "AzureWebJobsStorage"):
        value = os.getenv(name)
        if value:
            return value, name
    return None, None


_service_client: Optional[BlobServiceClient] = None


def _container_name() -> str:
    return os.getenv("LEARNING_REPORTS_CONTAINER", "learning-reports").strip() or "learning-reports"


def _get_service() -> BlobServiceClient:
    global _service_client
    if _service_client is None:
        conn_str, source = _resolve_blob_conn()
        if not conn_str:
            raise RuntimeError(
                "Missing STORAGE_CONNECTION_STRING, AZURE_STORAGE_CONNECTION_STRING, or AzureWebJobsStorage"
            )
        _logger.info("learning_reports: initializing BlobServiceClient using connection from env=%s", source)
        _service_client = BlobServiceClient.from_connection_string(conn_str)
    return _service_client


def get_container_client():
    cc = _get_service().get_container_client(_container_name())
    if not cc.exists():
        cc.create_container()
    return cc


def report_path(run_id: str, started_at: str) -> str:
    """Blob name for a run. Names sort by start time (UTC), newest last."""
    try:
        ts = datetime.fromisoformat(started_at) if started_at else datetime.now(timezone.utc)
    except ValueError:
        ts = datetime.now(timezone.utc)
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return f"{REPORT_PREFIX}{ts:%Y-%m-%d}/{ts:%H%M%S%f}-{run_id}.json"


def archive_run(report: Dict[str, Any]) -> Optional[str]:
    """Write a run report when archiving is enabled. Failures are logged, not raised."""
    if not env_flag("LEARNING_REPORTS_ENABLED"):
        return None

    path = report_path(report["runId"], report.get("startedAt") or "")
    data = json.dumps(report, ensure_ascii=False).encode("utf-8")
    try:
        get_container_client().get_blob_client(path).upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type="application/json; charset=utf-8"),
        )
    except Exception as exc:  # noqa: BLE001
        _logger.exception("learning_reports: failed to archive run %s: %s", report.get("runId"), exc)
        return None

    _logger.info("learning_reports: archived run %s to %s", report["runId"], path)
    return path


def list_reports(limit: int = 20) -> List[Dict[str, Any]]:
    """Return the most recent archived reports, newest first.

    Blob names sort by start time, so only the newest ``limit`` blobs (plus any
    unreadable ones skipped along the way) are downloaded.
    """
    cc = get_container_client()
    names = sorted(
        (b.name for b in cc.list_blobs(name_starts_with=REPORT_PREFIX) if b.name.endswith(".json")),
        reverse=True,
    )
    reports: List[Dict[str, Any]] = []
    for name in names:
        if len(reports) >= limit:
            break
        try:
            doc = json.loads(cc.get_blob_client(name).download_blob().readall().decode("utf-8"))
        except Exception as exc:  # noqa: BLE001
            _logger.warning("learning_reports: skipping unreadable report %s: %s", name, exc)
            continue
        reports.append(doc)
    return reports
