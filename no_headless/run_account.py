#!/usr/bin/env python3
"""
Run one account headed, for diagnosing a page the classifier gets wrong.

Usage:
  ACCOUNT_ID="acc-1" ACTION="resume" python3 -m no_headless.run_account

Optional:
  DATA_DIR="/data"             accounts.json and results live here
  BROWSER_BACKEND="local"      or "adspower"
  AUTH_MODE="session"          or "credentials"
  DEBUG_MODE="1"               snapshot every step

With ACTION="bootstrap" and PROFILE_ID set, a headed browser opens the
management page so the session can be signed in by hand; the storage state
is then saved where the local backend looks for it.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path

from playwright.sync_api import sync_playwright

from agents.subscription_agent.service import ServiceSettings, SubscriptionAgentService
from agents.subscription_agent.supervisor import SupervisorSettings

MANAGEMENT_URL = "https://www.youtube.com/paid_memberships"


def bootstrap(data_dir: Path, profile_id: str, url: str) -> None:
    out_path = data_dir / "storage" / f"{profile_id}.json"
    out_path.parent.mkdir(parents=True, exist_ok=True)

    with sync_playwright() as p:
        browser = p.chromium.launch(headless=False)
        context = browser.new_context()
        page = context.new_page()
        page.goto(url, wait_until="domcontentloaded", timeout=120_000)

        print("Sign in manually in the browser window.")
        input("Press ENTER here when done to save the session... ")

        context.storage_state(path=str(out_path))
        print(f"Storage state saved to: {out_path}")

        context.close()
        browser.close()


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )
    data_dir = Path(os.getenv("DATA_DIR", "no_headless/data")).resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    action = os.getenv("ACTION", "resume").strip().lower()
    url = os.getenv("MANAGEMENT_URL", MANAGEMENT_URL).strip()

    if action == "bootstrap":
        profile_id = os.getenv("PROFILE_ID", "").strip()
        if not profile_id:
            raise SystemExit("PROFILE_ID is required. Example: ACTION=bootstrap PROFILE_ID=k12abc python3 -m no_headless.run_account")
        bootstrap(data_dir, profile_id, url)
        return

    account_id = os.getenv("ACCOUNT_ID", "").strip()
    if not account_id:
        raise SystemExit("ACCOUNT_ID is required. Example: ACCOUNT_ID='acc-1' ACTION=resume python3 -m no_headless.run_account")

    settings = ServiceSettings(
        browser_backend=os.getenv("BROWSER_BACKEND", "local").strip().lower(),
        adspower_api_url=os.getenv("ADSPOWER_API_URL", "http://127.0.0.1:50325"),
        auth_mode=os.getenv("AUTH_MODE", "session"),
        headless=False,
        supervisor=SupervisorSettings(management_url=url),
    )
    service = SubscriptionAgentService(data_dir, settings, logging.getLogger("subscription_runner.cli"))
    result = service.run_account(action, account_id, debug_mode=os.getenv("DEBUG_MODE", "") in ("1", "true"))
    print(json.dumps(result, ensure_ascii=False, indent=2))
    if not result.get("ok"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
