"""Drive every StepRelay scenario against a running backend.

    cd backend && uvicorn steprelay.main:app --port 8000
    python demos/run_chain_demo.py chained
    python demos/run_chain_demo.py chained --kill-after 5
    python demos/run_chain_demo.py sequential
    python demos/run_chain_demo.py race
"""
from __future__ import annotations

import argparse
import json
import time
from typing import Any

import requests

BASE_URL = "http://localhost:8000/api"


def _get(url: str, timeout: int = 10, **params: Any) -> Any:
    r = requests.get(url, params=params or None, timeout=timeout)
    r.raise_for_status()
    return r.json()


def _post(url: str, payload: dict[str, Any] | None = None, timeout: int = 30) -> requests.Response:
    r = requests.post(url, json=payload, timeout=timeout)
    if r.status_code >= 400:
        raise RuntimeError(f"POST {url} -> {r.status_code}: {r.text}")
    return r


def ensure_backend() -> None:
    try:
        health = _get(f"{BASE_URL}/health", timeout=5)
    except requests.exceptions.RequestException as exc:
        raise SystemExit(f"Backend not reachable at {BASE_URL}: {exc}\n"
                         "Start it with: cd backend && uvicorn steprelay.main:app --port 8000")
    if health.get("status") != "ok":
        raise SystemExit(f"Backend unhealthy: {health}")


def _print_run(run: dict[str, Any]) -> None:
    steps = "  ".join(
        f"{s['step']}:{s['status']}" + (f"({s['durationMs']}ms)" if s.get("durationMs") is not None else "")
        for s in run["steps"]
    )
    print(f"  [{run['status']:>9}] {steps}" + (f"  error={run['error']!r}" if run.get("error") else ""))


def run_chained(kill_after: float | None, timeout: float) -> None:
    created = _post(f"{BASE_URL}/runs", {"scenario": "chained"}).json()["run"]
    run_id = created["id"]
    print(f"✓ Run created: {run_id}")

    started = time.monotonic()
    first = _post(f"{BASE_URL}/chained/1", {"runId": run_id})
    print(f"✓ Step 1 answered {first.status_code}: {first.json()['status']}")

    killed = False
    last_seen = None
    while time.monotonic() - started < timeout:
        run = _get(f"{BASE_URL}/chained/status", runId=run_id)["run"]
        if run != last_seen:
            _print_run(run)
            last_seen = run
        if run["status"] in ("completed", "failed"):
            break
        if kill_after is not None and not killed and time.monotonic() - started >= kill_after:
            print("→ Kill switch")
            _print_run(_post(f"{BASE_URL}/runs/{run_id}/kill", {}).json()["run"])
            killed = True
        time.sleep(0.5)
    else:
        print(f"✗ Run {run_id} still active after {timeout:.0f}s")
        return
    print(f"✓ Finished in {time.monotonic() - started:.1f}s")


def run_streaming(path: str) -> None:
    with requests.post(f"{BASE_URL}/{path}", stream=True, timeout=60) as r:
        r.raise_for_status()
        print(f"✓ Streaming run {r.headers.get('X-Run-ID')}")
        for line in r.iter_lines():
            if not line:
                continue
            event = json.loads(line)
            kind = event.pop("type")
            print(f"  {kind:<13} {json.dumps(event)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="StepRelay scenario demo")
    parser.add_argument("scenario", choices=["chained", "sequential", "race"])
    parser.add_argument("--kill-after", type=float, default=None, help="Chained only: kill the run after N seconds")
    parser.add_argument("--timeout", type=float, default=120.0, help="Chained only: give up polling after N seconds")
    args = parser.parse_args()

    ensure_backend()
    print("✓ Backend healthy")

    if args.scenario == "chained":
        run_chained(args.kill_after, args.timeout)
    elif args.scenario == "sequential":
        run_streaming("sequential")
    else:
        run_streaming("sequential-with-race")

    recent = _get(f"{BASE_URL}/runs", limit=5)["runs"]
    print(f"\nRecent runs ({len(recent)}):")
    for run in recent:
        print(f"  {run['id']}  {run['scenario']:<10} {run['status']}")


if __name__ == "__main__":
    main()
