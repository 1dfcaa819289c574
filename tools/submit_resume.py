#!/usr/bin/env python3
# tools/submit_resume.py
import argparse
import time
from pathlib import Path
from typing import Any, Dict

import requests
from rich.console import Console
from rich.table import Table

console = Console()


def _submit_inline(url: str, pdf: Path, form: Dict[str, str], timeout_s: int) -> Dict[str, Any]:
    with open(pdf, "rb") as f:
        r = requests.post(
            f"{url}/submissions",
            files={"file": (pdf.name, f, "application/pdf")},
            data=form,
            timeout=timeout_s,
        )
    if r.status_code == 400:
        r.raise_for_status()
    return r.json()


def _submit_job(url: str, pdf: Path, form: Dict[str, str], timeout_s: int, poll_s: float) -> Dict[str, Any]:
    with open(pdf, "rb") as f:
        r = requests.post(
            f"{url}/jobs",
            files={"file": (pdf.name, f, "application/pdf")},
            data=form,
            timeout=timeout_s,
        )
    r.raise_for_status()
    job_id = r.json()["job_id"]

    last = None
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        j = requests.get(f"{url}/jobs/{job_id}", timeout=timeout_s).json()
        status = (j.get("progress") or {}).get("status")
        if status and status != last:
            console.print(f"[cyan]{status}[/cyan]")
            last = status
        if j.get("status") in ("SUCCEEDED", "FAILED"):
            return j
        time.sleep(poll_s)
    raise SystemExit(f"job {job_id} did not finish within {timeout_s}s")


def _print_history(history) -> None:
    table = Table(title="Pipeline")
    table.add_column("State")
    table.add_column("Status")
    for h in history or []:
        table.add_row(h.get("state", ""), h.get("status", ""))
    console.print(table)


def main() -> None:
    ap = argparse.ArgumentParser(description="Submit a resume PDF for review.")
    ap.add_argument("pdf", type=Path)
    ap.add_argument("--url", default="http://127.0.0.1:8000")
    ap.add_argument("--company", default="")
    ap.add_argument("--title", default="")
    ap.add_argument("--description", default="")
    ap.add_argument("--queue", action="store_true", help="Go through /jobs and the worker instead of /submissions.")
    ap.add_argument("--timeout-s", type=int, default=300)
    ap.add_argument("--poll-s", type=float, default=1.0)
    args = ap.parse_args()

    if not args.pdf.is_file():
        raise SystemExit(f"not a file: {args.pdf}")

    form = {"company_name": args.company, "job_title": args.title, "job_description": args.description}
    url = args.url.rstrip("/")

    if args.queue:
        res = _submit_job(url, args.pdf, form, args.timeout_s, args.poll_s)
        history = res.get("history")
    else:
        res = _submit_inline(url, args.pdf, form, args.timeout_s)
        history = res.get("status_history")

    _print_history(history)

    if not res.get("ok"):
        console.print(f"[red]FAILED[/red] {res.get('reason') or res.get('error')}: {res.get('detail', '')}")
        raise SystemExit(1)

    record_id = res["record_id"]
    record = requests.get(f"{url}/resumes/{record_id}", timeout=args.timeout_s).json()
    console.print(f"[green]COMPLETE[/green] record {record_id}")
    console.print_json(data=record.get("feedback"))


if __name__ == "__main__":
    main()
