"""
Evaluation harness -- runs eval_questions.jsonl through the intent classifier
and generates analytics/reports/eval_report.md.

Checks:
  - Kind correctness      (classified intent kind matches expected)
  - Slot correctness      (vendor / category / top_n / fallback, where expected)
  - Determinism           (classifying twice yields the identical intent)
  - Latency               (classification ms)

No database is needed: only the classifier is exercised.
Run:  python -m analytics.eval.run_eval
"""
from __future__ import annotations

import datetime
import json
import sys
import time
from pathlib import Path
from typing import Any

EVAL_PATH = Path(__file__).resolve().parent / "eval_questions.jsonl"
REPORT_PATH = Path(__file__).resolve().parents[1] / "reports" / "eval_report.md"

_SLOTS = ("vendor", "category", "top_n", "fallback")


def _load_questions() -> list[dict[str, Any]]:
    lines = EVAL_PATH.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def _run_one(q: dict[str, Any], classifier: Any, now: datetime.datetime) -> dict[str, Any]:
    """Classify a single question and score it against its expectations."""
    question = q["question"]
    t0 = time.perf_counter()
    try:
        intent = classifier.classify(question, now=now)
        again = classifier.classify(question, now=now)
    except Exception as exc:
        return {
            "question": question,
            "error": str(exc),
            "latency_ms": int((time.perf_counter() - t0) * 1000),
            "kind": None,
            "kind_ok": False,
            "slots_ok": False,
            "deterministic": False,
            "success": False,
            "mismatches": [],
        }
    latency = int((time.perf_counter() - t0) * 1000)

    kind_ok = intent.kind.value == q["expected_kind"]
    mismatches = []
    for slot in _SLOTS:
        expected_key = f"expected_{slot}"
        if expected_key in q and getattr(intent, slot) != q[expected_key]:
            mismatches.append(f"{slot}: expected {q[expected_key]!r}, got {getattr(intent, slot)!r}")
    deterministic = intent == again

    return {
        "question": question,
        "error": None,
        "latency_ms": latency,
        "kind": intent.kind.value,
        "kind_ok": kind_ok,
        "slots_ok": not mismatches,
        "deterministic": deterministic,
        "success": kind_ok and not mismatches and deterministic,
        "mismatches": mismatches,
    }


def _generate_report(results: list[dict[str, Any]], questions: list[dict[str, Any]], mode: str) -> str:
    total = len(results)
    successes = sum(1 for r in results if r["success"])
    kind_correct = sum(1 for r in results if r["kind_ok"])
    slots_correct = sum(1 for r in results if r["slots_ok"])
    deterministic = sum(1 for r in results if r["deterministic"])

    def pct(n: int) -> float:
        return n / total * 100 if total else 0.0

    latencies = sorted(r["latency_ms"] for r in results)
    avg_lat = sum(latencies) / total if total else 0
    p95_lat = latencies[min(len(latencies) - 1, int(len(latencies) * 0.95))] if latencies else 0

    lines: list[str] = []
    lines.append("# Intent Classifier Evaluation Report")
    lines.append("")
    lines.append(f"**Generated:** {datetime.datetime.now():%Y-%m-%d %H:%M:%S}  ")
    lines.append(f"**Classifier mode:** `{mode}`  ")
    lines.append(f"**Questions:** {total}")
    lines.append("")
    lines.append("---")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Overall success rate | **{pct(successes):.0f}%** ({successes}/{total}) |")
    lines.append(f"| Kind correctness | **{pct(kind_correct):.0f}%** ({kind_correct}/{total}) |")
    lines.append(f"| Slot correctness | **{pct(slots_correct):.0f}%** ({slots_correct}/{total}) |")
    lines.append(f"| Deterministic | **{pct(deterministic):.0f}%** ({deterministic}/{total}) |")
    lines.append(f"| Mean latency | {avg_lat:.1f} ms |")
    lines.append(f"| p95 latency | {p95_lat} ms |")
    lines.append("")
    lines.append("## Per-Question Results")
    lines.append("")
    lines.append("| # | Question | Expected | Got | Slots | Pass |")
    lines.append("|---|----------|----------|-----|-------|------|")
    for i, (r, q) in enumerate(zip(results, questions), 1):
        qtext = r["question"][:55] + ("..." if len(r["question"]) > 55 else "")
        slots = "OK" if r["slots_ok"] else "ERROR"
        passed = "OK" if r["success"] else "ERROR"
        lines.append(f"| {i} | {qtext} | {q['expected_kind']} | {r['kind'] or '--'} | {slots} | {passed} |")
    lines.append("")

    lines.append("## Failures")
    lines.append("")
    failures = [(i, r) for i, r in enumerate(results, 1) if not r["success"]]
    if not failures:
        lines.append("None -- all questions classified correctly.")
        lines.append("")
    for i, r in failures:
        lines.append(f"### #{i}: {r['question']}")
        lines.append("")
        if r["error"]:
            lines.append(f"**Error:** `{r['error']}`")
        for m in r["mismatches"]:
            lines.append(f"- {m}")
        if not r["deterministic"] and not r["error"]:
            lines.append("- classification was not deterministic")
        lines.append("")

    return "\n".join(lines)


def run(mode: str = "rules") -> list[dict[str, Any]]:
    from src.query_engine.classifier import IntentClassifier
    from src.query_engine.timeframe import anchor_for

    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[attr-defined]

    questions = _load_questions()
    print(f"Loaded {len(questions)} eval questions.")
    print(f"Running evaluation (mode={mode})...\n")

    classifier = IntentClassifier(mode=mode)
    now = anchor_for(datetime.datetime.now())
    results = []
    for i, q in enumerate(questions, 1):
        r = _run_one(q, classifier, now)
        status = "PASS" if r["success"] else "FAIL"
        print(f"  [{i:2d}/{len(questions)}] {status}  {r['question'][:60]:<60}  {r['kind'] or '--'}")
        results.append(r)

    report = _generate_report(results, questions, mode)
    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(report, encoding="utf-8")
    print(f"\nReport written to {REPORT_PATH}")

    total = len(results)
    successes = sum(1 for r in results if r["success"])
    print(f"\n{'='*50}")
    print(f"  Success: {successes}/{total} ({successes / total * 100 if total else 0:.0f}%)")
    print(f"{'='*50}")
    return results


if __name__ == "__main__":
    run(sys.argv[1] if len(sys.argv) > 1 else "rules")
