import json
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
from playwright.sync_api import sync_playwright

from agents.subscription_agent.accounts import JsonAccountDirectory
from agents.subscription_agent.auth import build_auth_provider
from agents.subscription_agent.connection import (
    AdsPowerConnector,
    ConnectionResolver,
    LocalProfileConnector,
)
from agents.subscription_agent.dates import DateCandidateResolver
from agents.subscription_agent.models import RunOptions, WorkflowAction, WorkflowRun
from agents.subscription_agent.supervisor import SupervisorSettings, WorkflowSupervisor


AGENT_NAME = "subscription_agent"


@dataclass(frozen=True)
class ServiceSettings:
    browser_backend: str = "adspower"
    adspower_api_url: str = "http://127.0.0.1:50325"
    auth_mode: str = "session"
    webhook_url_status: str = ""
    webhook_url_final: str = ""
    max_parallel_runs: int = 3
    date_year_min: int = 2020
    date_year_max: int = 2035
    events_retention_days: int = 30
    results_retention_days: int = 90
    headless: bool = True
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)


class SubscriptionAgentService:
    """Pauses and resumes memberships for the accounts in accounts.json.

    One run per account at a time; each run gets its own Playwright
    instance, browser session and WorkflowRun. Runtime transitions go to a
    JSON-lines journal and every final record to a results journal.
    """

    def __init__(
        self,
        data_dir: Path,
        settings: ServiceSettings,
        logger,
        *,
        accounts: Optional[JsonAccountDirectory] = None,
        playwright_factory: Callable[[], Any] = sync_playwright,
        supervisor_factory: Optional[Callable[..., WorkflowSupervisor]] = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.settings = settings
        self.logger = logger
        self.accounts = accounts or JsonAccountDirectory(self.data_dir / "accounts.json", logger)
        self.playwright_factory = playwright_factory
        self.supervisor_factory = supervisor_factory or self._build_supervisor
        self._locks_guard = threading.Lock()
        self._account_locks: Dict[str, threading.Lock] = {}
        self._status_lock = threading.Lock()
        self._events_lock = threading.Lock()
        self.runtime_state_path = self.data_dir / "subscription_runtime_state.json"
        self.runtime_events_path = self.data_dir / "subscription_runtime_events.jsonl"
        self.results_path = self.data_dir / "subscription_results.jsonl"
        self._last_prune_day = ""
        self._runtime_state: Dict[str, Dict[str, Any]] = self._load_runtime_state()
        self._debug("Service initialized", backend=settings.browser_backend, auth_mode=settings.auth_mode)
        self._maybe_prune_journals()

    # ---------- runtime state & journals ----------

    def _load_runtime_state(self) -> Dict[str, Dict[str, Any]]:
        if not self.runtime_state_path.exists():
            return {}
        try:
            data = json.loads(self.runtime_state_path.read_text(encoding="utf-8"))
        except Exception:
            self.logger.exception("Failed to read persisted runtime state")
            return {}
        if not isinstance(data, dict):
            return {}
        states = {key: value for key, value in data.items() if isinstance(value, dict)}
        # A restart interrupts whatever was running.
        for state in states.values():
            if state.get("phase") not in ("finished", "failed", "busy"):
                state["phase"] = "interrupted"
                state["message"] = "Service restarted during the run"
        return states

    def _persist_runtime_state(self, states: Dict[str, Dict[str, Any]]) -> None:
        try:
            self.runtime_state_path.parent.mkdir(parents=True, exist_ok=True)
            self.runtime_state_path.write_text(
                json.dumps(states, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except Exception:
            self.logger.exception("Failed to persist runtime state")

    def _append_jsonl(self, path: Path, item: Dict[str, Any]) -> None:
        with self._events_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(item, ensure_ascii=False) + "\n")

    def _append_runtime_event(self, event: str, **meta: Any) -> None:
        item = {
            "ts": datetime.now().isoformat(),
            "event": event,
            "phase": meta.get("phase"),
            "run_id": meta.get("run_id"),
            "job": meta.get("job"),
            "account_id": meta.get("account_id"),
            "meta": meta,
        }
        try:
            self._append_jsonl(self.runtime_events_path, item)
            self._maybe_prune_journals()
        except Exception:
            self.logger.exception("Failed to store runtime event")

    def _append_result(self, record: Dict[str, Any]) -> None:
        item = {"ts": datetime.now().isoformat(), **record}
        try:
            self._append_jsonl(self.results_path, item)
        except Exception:
            self.logger.exception("Failed to store run result")

    @staticmethod
    def _journal_time(item: Any) -> Optional[datetime]:
        """Local naive time of a journal line's ``ts``; None when unreadable."""
        if not isinstance(item, dict):
            return None
        try:
            stamp = datetime.fromisoformat(str(item.get("ts") or "").strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if stamp.tzinfo is not None:
            stamp = stamp.astimezone().replace(tzinfo=None)
        return stamp

    def _maybe_prune_journals(self) -> None:
        today = date.today().isoformat()
        if self._last_prune_day == today:
            return
        self._last_prune_day = today
        self._prune_journal(self.runtime_events_path, self.settings.events_retention_days)
        self._prune_journal(self.results_path, self.settings.results_retention_days)

    def _prune_journal(self, path: Path, retention_days: int) -> Dict[str, int]:
        """Drop lines older than the retention window; returns removals per account.

        Lines without a readable timestamp are kept.
        """
        if not path.exists():
            return {}
        cutoff = datetime.now() - timedelta(days=max(1, int(retention_days)))
        removed: Dict[str, int] = {}
        try:
            with self._events_lock:
                kept: List[str] = []
                for line in path.read_text(encoding="utf-8").splitlines():
                    if not line.strip():
                        continue
                    try:
                        item = json.loads(line)
                    except ValueError:
                        item = None
                    stamp = self._journal_time(item)
                    if stamp is None or stamp >= cutoff:
                        kept.append(line)
                        continue
                    account = str(item.get("account_id") or "-")
                    removed[account] = removed.get(account, 0) + 1
                if not removed:
                    return {}
                path.write_text("".join(line + "\n" for line in kept), encoding="utf-8")
        except OSError:
            self.logger.exception("Failed to prune %s", path.name)
            return {}
        self.logger.info(
            "Pruned %s: removed=%s accounts=%s retained=%s retention_days=%s",
            path.name,
            sum(removed.values()),
            len(removed),
            len(kept),
            retention_days,
        )
        return removed

    def _set_runtime_state(self, account_id: str, phase: str, message: str, **meta: Any) -> None:
        with self._status_lock:
            self._runtime_state[account_id] = {
                "account_id": account_id,
                "phase": phase,
                "message": message,
                "updated_at": datetime.now().isoformat(),
                **meta,
            }
            states_copy = {key: dict(value) for key, value in self._runtime_state.items()}
        self._persist_runtime_state(states_copy)
        self._append_runtime_event(
            "state_transition",
            phase=phase,
            message=message,
            account_id=account_id,
            run_id=meta.get("run_id", ""),
            job=meta.get("job", ""),
            ok=meta.get("ok"),
        )

    @staticmethod
    def _read_jsonl(path: Path) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except ValueError:
                continue
            if isinstance(item, dict):
                items.append(item)
        return items

    def get_runtime_events(self, limit: int = 200, day: str = "", account_id: str = "") -> Dict[str, Any]:
        if not self.runtime_events_path.exists():
            return {"ok": True, "count": 0, "items": []}
        try:
            items = self._read_jsonl(self.runtime_events_path)
        except OSError:
            self.logger.exception("Failed to read runtime events")
            return {"ok": False, "count": 0, "items": []}

        day_prefix = (day or "").strip()
        wanted = (account_id or "").strip()
        if day_prefix:
            items = [item for item in items if str(item.get("ts", "")).startswith(day_prefix)]
        if wanted:
            items = [item for item in items if item.get("account_id") == wanted]
        items = items[-max(1, min(limit, 1000)) :]
        return {"ok": True, "count": len(items), "items": items}

    def get_results(self, limit: int = 200, account_id: str = "") -> Dict[str, Any]:
        if not self.results_path.exists():
            return {"ok": True, "count": 0, "items": []}
        try:
            items = self._read_jsonl(self.results_path)
        except OSError:
            self.logger.exception("Failed to read run results")
            return {"ok": False, "count": 0, "items": []}
        wanted = (account_id or "").strip()
        if wanted:
            items = [item for item in items if item.get("account_id") == wanted]
        items = items[-max(1, min(limit, 1000)) :]
        return {"ok": True, "count": len(items), "items": items}

    def get_status(self) -> Dict[str, Any]:
        with self._status_lock:
            states = {key: dict(value) for key, value in self._runtime_state.items()}
        with self._locks_guard:
            running = sorted(key for key, lock in self._account_locks.items() if lock.locked())
        return {
            "ok": True,
            "running": running,
            "accounts": states,
            "backend": self.settings.browser_backend,
            "auth_mode": self.settings.auth_mode,
        }

    # ---------- helpers ----------

    @staticmethod
    def _now_text() -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug(f"[DEBUG][{AGENT_NAME}] {message} | at={self._now_text()}{suffix}")

    @staticmethod
    def _sanitize_url_for_log(raw_url: str) -> str:
        """Strip credentials, query and fragment; webhook URLs often carry tokens."""
        if not raw_url:
            return raw_url
        try:
            parts = urlsplit(raw_url)
            host = parts.hostname or ""
            if parts.port is not None:
                host = f"{host}:{parts.port}"
        except ValueError:
            return "<invalid url>"
        return urlunsplit((parts.scheme, host, parts.path, "", ""))

    @staticmethod
    def now_id() -> str:
        return time.strftime("%Y%m%d-%H%M%S")

    @staticmethod
    def _safe_name(value: str) -> str:
        return re.sub(r"[^A-Za-z0-9_.-]", "_", str(value or "")) or "run"

    def _artifact_dir(self, job: str, run_id: str) -> Path:
        d = self.data_dir / "runs" / job / self._safe_name(run_id)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._account_locks[account_id] = lock
            return lock

    def list_jobs(self) -> Dict[str, Any]:
        return {action.value: action for action in WorkflowAction}

    # ---------- webhooks ----------

    def _post_webhook(self, url: str, payload: Dict[str, Any]) -> bool:
        account_id = payload.get("account_id") or "-"
        if not url:
            self._debug("Webhook skipped: URL not configured", account_id=account_id)
            return False
        sanitized_url = self._sanitize_url_for_log(url)
        try:
            response = httpx.post(url, json=payload, timeout=15)
            response.raise_for_status()
        except Exception:
            self.logger.exception(
                "Webhook failed url=%s account=%s run_id=%s",
                sanitized_url,
                account_id,
                payload.get("run_id"),
            )
            return False
        self._debug("Webhook sent", url=sanitized_url, account_id=account_id, step=payload.get("step", "final"))
        return True

    def send_status(
        self,
        job_name: str,
        run_id: str,
        step: str,
        message: str,
        ok: bool = True,
        extra: Optional[Dict[str, Any]] = None,
        account_id: str = "",
    ) -> None:
        payload = {
            "ok": ok,
            "job": job_name,
            "run_id": run_id,
            "account_id": account_id,
            "step": step,
            "message": message,
            "ts": datetime.now().isoformat(),
            "meta": extra or {},
        }
        log_fn = self.logger.info if ok else self.logger.error
        log_fn("[%s:%s] %s %s - %s", job_name, run_id, account_id or "-", step, message)
        self._post_webhook(self.settings.webhook_url_status, payload)

    def send_final(self, job_name: str, run_id: str, result: Dict[str, Any]) -> None:
        payload = {
            "ok": result.get("ok", False),
            "job": job_name,
            "run_id": run_id,
            "account_id": result.get("account_id", ""),
            "message": f"[{job_name}] {result.get('account_id', '')} {result.get('outcome', 'error')}",
            "meta": result,
        }
        log_fn = self.logger.info if result.get("ok") else self.logger.error
        log_fn("Final result %s/%s: %s", job_name, run_id, payload["message"])
        delivered = self._post_webhook(self.settings.webhook_url_final, payload)
        self._append_runtime_event(
            "final_webhook_sent" if delivered else "final_webhook_skipped",
            phase="finished" if payload["ok"] else "failed",
            account_id=result.get("account_id", ""),
            run_id=run_id,
            job=job_name,
            ok=payload["ok"],
            message=payload["message"],
            delivered=delivered,
        )

    # ---------- runs ----------

    def _build_supervisor(self, playwright, *, on_step, snapshot) -> WorkflowSupervisor:
        backend = self.settings.browser_backend.strip().lower()
        if backend == "local":
            connector = LocalProfileConnector(
                playwright,
                self.data_dir,
                self.logger,
                headless=self.settings.headless,
                driver_options={"navigation_timeout_ms": self.settings.supervisor.navigation_timeout_ms},
            )
        elif backend == "adspower":
            connector = AdsPowerConnector(
                playwright,
                self.settings.adspower_api_url,
                self.logger,
                driver_options={"navigation_timeout_ms": self.settings.supervisor.navigation_timeout_ms},
            )
        else:
            raise ValueError(f"Unknown browser_backend: {self.settings.browser_backend}")

        return WorkflowSupervisor(
            ConnectionResolver(connector, self.logger),
            build_auth_provider(self.settings.auth_mode, self.logger),
            self.settings.supervisor,
            self.logger,
            date_resolver=DateCandidateResolver(self.settings.date_year_min, self.settings.date_year_max),
            on_step=on_step,
            snapshot=snapshot,
        )

    def run_account(
        self,
        action: str,
        account_id: str,
        run_id: str = "",
        *,
        debug_mode: bool = False,
        workflow_timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        job_name = WorkflowAction(action).value
        run_id = run_id or self.now_id()

        account = self.accounts.find_account(account_id)
        if account is None:
            result = {
                "ok": False,
                "job": job_name,
                "run_id": run_id,
                "account_id": account_id,
                "outcome": "unknown_account",
                "error": f"Account {account_id!r} not found",
            }
            self.send_status(job_name, run_id, "rejected", result["error"], ok=False, account_id=account_id)
            return result

        lock = self._account_lock(account.account_id)
        if not lock.acquire(blocking=False):
            result = {
                "ok": False,
                "job": job_name,
                "run_id": run_id,
                "account_id": account.account_id,
                "outcome": "busy",
                "error": f"There is already an active run for {account.account_id}",
            }
            self._append_runtime_event(
                "run_rejected",
                phase="busy",
                account_id=account.account_id,
                run_id=run_id,
                job=job_name,
                ok=False,
            )
            self.send_status(job_name, run_id, "busy", result["error"], ok=False, account_id=account.account_id)
            return result

        try:
            return self._run_locked(job_name, account, run_id, debug_mode, workflow_timeout_ms)
        finally:
            lock.release()

    def _run_locked(self, job_name, account, run_id, debug_mode, workflow_timeout_ms) -> Dict[str, Any]:
        self.logger.info("Start job=%s account=%s run_id=%s debug=%s", job_name, account.account_id, run_id, debug_mode)
        self._set_runtime_state(
            account.account_id,
            "starting",
            f"{job_name} requested",
            run_id=run_id,
            job=job_name,
            ok=None,
        )

        def on_step(run: WorkflowRun, step: str, message: str) -> None:
            self._set_runtime_state(account.account_id, step, message, run_id=run_id, job=job_name, ok=None)
            self.send_status(job_name, run_id, step, message, account_id=account.account_id)

        def snap(driver, tag: str) -> None:
            run_dir = self._artifact_dir(job_name, run_id)
            driver.screenshot(str(run_dir / f"{tag}.png"))
            (run_dir / f"{tag}.html").write_text(driver.content(), encoding="utf-8")
            self.logger.info("Snapshot saved: %s/%s", run_dir, tag)

        options = RunOptions(
            action=WorkflowAction(job_name),
            workflow_timeout_ms=workflow_timeout_ms or self.settings.supervisor.workflow_timeout_ms,
            debug_mode=debug_mode,
            run_id=run_id,
        )

        try:
            with self.playwright_factory() as playwright:
                supervisor = self.supervisor_factory(playwright, on_step=on_step, snapshot=snap)
                run_result = supervisor.run(account, options, sheet_lookup=self.accounts.find_profile_ids)
            result = {"ok": run_result.success, "job": job_name, "run_id": run_id, **run_result.to_dict()}
        except Exception as err:
            self.logger.exception("Run crashed job=%s account=%s run_id=%s", job_name, account.account_id, run_id)
            result = {
                "ok": False,
                "job": job_name,
                "run_id": run_id,
                "account_id": account.account_id,
                "action": job_name,
                "outcome": "error",
                "status": "failed",
                "error": str(err),
                "reason_code": "unexpected_error",
            }

        self._append_result(result)
        self._set_runtime_state(
            account.account_id,
            "finished" if result["ok"] else "failed",
            f"{job_name}: {result.get('outcome')}",
            run_id=run_id,
            job=job_name,
            ok=result["ok"],
            status=result.get("status"),
            error=result.get("error"),
        )
        self.send_final(job_name, run_id, result)
        return result

    def run_batch(
        self,
        action: str,
        account_ids: Optional[List[str]] = None,
        run_id: str = "",
        *,
        max_workers: Optional[int] = None,
        debug_mode: bool = False,
    ) -> Dict[str, Any]:
        job_name = WorkflowAction(action).value
        run_id = run_id or self.now_id()
        if account_ids:
            wanted = [str(value).strip() for value in account_ids if str(value).strip()]
        else:
            wanted = [record.account_id for record in self.accounts.list_accounts() if record.account_id]
        if not wanted:
            return {"ok": False, "job": job_name, "run_id": run_id, "count": 0, "items": [], "error": "No accounts"}

        workers = max(1, min(max_workers or self.settings.max_parallel_runs, len(wanted)))
        self.logger.info("Batch job=%s run_id=%s accounts=%s workers=%s", job_name, run_id, len(wanted), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="subscription-run") as pool:
            futures = [
                pool.submit(
                    self.run_account,
                    job_name,
                    account_id,
                    f"{run_id}-{index:03d}",
                    debug_mode=debug_mode,
                )
                for index, account_id in enumerate(wanted, start=1)
            ]
            items = [future.result() for future in futures]

        succeeded = sum(1 for item in items if item.get("ok"))
        return {
            "ok": succeeded == len(items),
            "job": job_name,
            "run_id": run_id,
            "count": len(items),
            "succeeded": succeeded,
            "failed": len(items) - succeeded,
            "items": items,
        }
