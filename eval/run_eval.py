import dataclasses
import json
import time
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, List

# Run with: PYTHONPATH=. python eval/run_eval.py
from app.config import load_settings
from app.graph import ChatPipeline, build_graph
from app.services import build_services

PROMPTS_PATH = Path("eval/test_prompts.jsonl")
REPORT_PATH = Path("eval/report.json")

DEFAULT_USER = "user123"


def load_jsonl(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


# ---------------------------
# Metrics helpers
# ---------------------------
def _ratio(num: float, den: float) -> float:
    return num / den if den else 0.0


def action_metrics(expected: List[str], predicted: List[str]) -> Dict[str, Any]:
    """Accuracy, macro-F1 and per-action precision/recall for predicted actions."""
    pairs = Counter(zip(expected, predicted))
    actions = sorted(set(expected) | set(predicted))

    per_action: Dict[str, Any] = {}
    for action in actions:
        hits = pairs[(action, action)]
        predicted_as = sum(n for (_, p), n in pairs.items() if p == action)
        labelled_as = sum(n for (e, _), n in pairs.items() if e == action)
        precision = _ratio(hits, predicted_as)
        recall = _ratio(hits, labelled_as)
        per_action[action] = {
            "precision": round(precision, 4),
            "recall": round(recall, 4),
            "f1": round(_ratio(2 * precision * recall, precision + recall), 4),
            "support": labelled_as,
        }

    confusions = {f"{e} -> {p}": n for (e, p), n in sorted(pairs.items()) if e != p}
    return {
        "accuracy": round(_ratio(sum(pairs[(a, a)] for a in actions), len(expected)), 4),
        "macro_f1": round(_ratio(sum(m["f1"] for m in per_action.values()), len(actions)), 4),
        "per_action": per_action,
        "confusions": confusions,
    }


def match_rate(expected: List[bool], got: List[bool]) -> float:
    return round(_ratio(sum(e == g for e, g in zip(expected, got)), len(expected)), 4)


def _suite_name(row: Dict[str, Any]) -> str:
    return (row.get("suite") or "").strip().lower() or "core"


def _summarize(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(results)
    passed = sum(1 for r in results if r["pass"])

    labelled = [r for r in results if r["expected"]["action"] is not None]
    gated = [r for r in results if r["expected"]["validated"] is not None]
    risks = [r["got"]["risk_score"] for r in results]

    metrics: Dict[str, Any] = {"task_success_rate": round(_ratio(passed, total) * 100, 4)}
    if labelled:
        metrics["action"] = action_metrics(
            [r["expected"]["action"] for r in labelled], [r["got"]["action"] for r in labelled]
        )
    if gated:
        metrics["validation_accuracy"] = match_rate(
            [bool(r["expected"]["validated"]) for r in gated], [r["got"]["validated"] for r in gated]
        )
    if risks:
        metrics["mean_risk_score"] = round(_ratio(sum(risks), len(risks)), 2)

    return {
        "total": total,
        "passed": passed,
        "failed": total - passed,
        "pass_rate": metrics["task_success_rate"],
        "metrics": metrics,
        "failures": [r for r in results if not r["pass"]][:25],
    }


def evaluate(pipeline: ChatPipeline, rows: List[Dict[str, Any]], run_id: str) -> List[Dict[str, Any]]:
    """
    Rows run in file order against one pipeline, so multi-turn cases
    (same session_id) see the state earlier rows left behind.
    """
    results: List[Dict[str, Any]] = []
    for row in rows:
        test_id = row["id"]
        session_id = f"{row.get('session_id', 'eval_' + test_id)}__run_{run_id}"

        resp = pipeline.run(row["message"], user_id=row.get("user_id", DEFAULT_USER), session_id=session_id)

        expected_action = row.get("expected_action")
        expected_validated = row.get("expected_validated")

        reasons: List[str] = []
        if expected_action is not None and resp.action != expected_action:
            reasons.append(f"action mismatch: expected={expected_action} got={resp.action}")
        if expected_validated is not None and resp.metadata.validated != bool(expected_validated):
            reasons.append(f"validated mismatch: expected={expected_validated} got={resp.metadata.validated}")

        results.append(
            {
                "id": test_id,
                "suite": _suite_name(row),
                "session_id": session_id,
                "message": row["message"],
                "expected": {"action": expected_action, "validated": expected_validated},
                "got": {
                    "action": resp.action,
                    "validated": resp.metadata.validated,
                    "risk_score": resp.metadata.risk_score,
                    "order_id": resp.order_id,
                    "reply": resp.message,
                },
                "reasons": reasons,
                "pass": not reasons,
            }
        )
    return results


def _print_summary(title: str, summary: Dict[str, Any]) -> None:
    print(f"=== {title} ===")
    print(f"Total: {summary['total']} | Passed: {summary['passed']} | Failed: {summary['failed']} "
          f"| Pass rate: {summary['pass_rate']:.2f}%")
    m = summary["metrics"]
    if "action" in m:
        print(f"  action accuracy: {m['action']['accuracy']} | macro F1: {m['action']['macro_f1']}")
    if "validation_accuracy" in m:
        print(f"  validation accuracy: {m['validation_accuracy']}")
    if "mean_risk_score" in m:
        print(f"  mean risk score: {m['mean_risk_score']}")
    print("")


def main():
    settings = dataclasses.replace(
        load_settings(), llm_mode="stub", store_backend="memory", cache_backend="memory", seed_demo_orders=True
    )
    pipeline = build_graph(build_services(settings))
    run_id = str(int(time.time()))
    try:
        results = evaluate(pipeline, load_jsonl(PROMPTS_PATH), run_id)
    finally:
        pipeline.services.close()

    overall = _summarize(results)
    by_suite: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for r in results:
        by_suite[r["suite"]].append(r)
    suites = {name: _summarize(rs) for name, rs in sorted(by_suite.items())}

    print("")
    _print_summary("OrderDesk eval (all suites)", overall)
    for name, summary in suites.items():
        _print_summary(f"suite: {name}", summary)

    for f in overall["failures"][:10]:
        print(f"[{f['id']}] {'; '.join(f['reasons'])}")
        print(f"  got: {f['got']}")

    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    report = {"run_id": run_id, "mode": settings.llm_mode, "overall": overall, "suites": suites, "results": results}
    REPORT_PATH.write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(f"Saved: {REPORT_PATH}")


if __name__ == "__main__":
    main()
