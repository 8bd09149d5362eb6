"""
W4 sales-call rubric: phase maxima, checkpoints, rating bands, and report normalization.

Model output is trusted for content but not for shape: every top-level field is
defaulted, scores are clamped to their maxima, and the rating is derived from the
total when the model omits it or returns something outside the known bands.
"""

from __future__ import annotations

import copy
from typing import Any

# phase -> (max_score, [(checkpoint name, max_score), ...])
PHASES: dict[str, tuple[int, list[tuple[str, int]]]] = {
    "why": (
        38,
        [
            ("Sitdown/Transition", 5),
            ("Rapport Building - FORM Method", 5),
            ("Assessment Questions (Q1-Q16)", 12),
            ("Inspection", 3),
            ("Present Findings", 5),
            ("Tie-Down WHY & Repair vs. Replace", 8),
        ],
    ),
    "what": (
        27,
        [
            ("Formal Presentation System", 5),
            ("System Options - FBAL Method", 12),
            ("Backup Recommendations/Visuals", 5),
            ("Tie-Down WHAT", 5),
        ],
    ),
    "who": (
        25,
        [
            ("Company Advantages", 8),
            ("Pyramid of Pain", 8),
            ("WHO Tie-Down", 9),
        ],
    ),
    "when": (
        10,
        [
            ("Price Presentation", 5),
            ("Post-Close Silence", 5),
        ],
    ),
}

TOTAL_MAX = 100

# (min score inclusive, rating), highest band first.
RATING_BANDS: list[tuple[int, str]] = [
    (90, "MVP"),
    (75, "Playmaker"),
    (60, "Starter"),
    (45, "Prospect"),
    (0, "Below Prospect"),
]
RATINGS = frozenset(r for _, r in RATING_BANDS)

UNKNOWN = "Unknown"


def rating_for(score: float) -> str:
    s = max(0.0, min(float(TOTAL_MAX), float(score)))
    for lo, name in RATING_BANDS:
        if s >= lo:
            return name
    return RATING_BANDS[-1][1]


def default_report() -> dict[str, Any]:
    return {
        "client_name": UNKNOWN,
        "rep_name": UNKNOWN,
        "company_name": UNKNOWN,
        "overall_performance": {"total_score": 0, "rating": rating_for(0), "summary": ""},
        "phases": {
            phase: {
                "score": 0,
                "max_score": mx,
                "checkpoints": [
                    {"name": name, "score": 0, "max_score": cmx, "justification": ""}
                    for name, cmx in cps
                ],
            }
            for phase, (mx, cps) in PHASES.items()
        },
        "what_done_right": [],
        "areas_for_improvement": [],
        "weakest_elements": [],
        "coaching_recommendations": {},
        "rank_assessment": {"current_rank": rating_for(0), "next_level_requirements": ""},
        "quick_wins": [],
    }


def _num(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    try:
        return float(str(v).strip())
    except (TypeError, ValueError):
        return None


def _clamp(v: Any, mx: float) -> int | float:
    n = _num(v)
    if n is None:
        return 0
    n = max(0.0, min(float(mx), n))
    return int(n) if n.is_integer() else n


def _normalize_phase(name: str, raw: Any) -> dict[str, Any]:
    mx, cps = PHASES[name]
    out = copy.deepcopy(default_report()["phases"][name])
    if not isinstance(raw, dict):
        return out
    out.update({k: v for k, v in raw.items() if k not in {"score", "max_score", "checkpoints"}})
    max_by_name = dict(cps)
    checkpoints = raw.get("checkpoints")
    if isinstance(checkpoints, list):
        fixed: list[dict[str, Any]] = []
        for cp in checkpoints:
            if not isinstance(cp, dict):
                continue
            cp = dict(cp)
            cmx = _num(cp.get("max_score")) or max_by_name.get(str(cp.get("name") or ""), mx)
            cmx = min(float(cmx), float(mx))
            cp["max_score"] = int(cmx) if float(cmx).is_integer() else cmx
            cp["score"] = _clamp(cp.get("score"), cmx)
            fixed.append(cp)
        out["checkpoints"] = fixed
    score = _num(raw.get("score"))
    if score is None:
        score = sum(float(cp.get("score") or 0) for cp in out["checkpoints"])
    out["score"] = _clamp(score, mx)
    out["max_score"] = mx
    return out


def normalize_report(raw: Any) -> dict[str, Any]:
    """
    Merge a parsed model report over the default shape and enforce score bounds.
    """
    report = default_report()
    if not isinstance(raw, dict):
        return report
    for k, v in raw.items():
        if k in {"overall_performance", "phases", "rank_assessment"}:
            continue
        report[k] = v
    for k in ("client_name", "rep_name", "company_name"):
        if not str(report.get(k) or "").strip():
            report[k] = UNKNOWN
    for k in ("what_done_right", "areas_for_improvement", "weakest_elements", "quick_wins"):
        if not isinstance(report.get(k), list):
            report[k] = []
    if not isinstance(report.get("coaching_recommendations"), dict):
        report["coaching_recommendations"] = {}

    phases_raw = raw.get("phases") if isinstance(raw.get("phases"), dict) else {}
    phases = {name: _normalize_phase(name, phases_raw.get(name)) for name in PHASES}
    for extra, v in phases_raw.items():
        if extra not in phases:
            phases[extra] = v
    report["phases"] = phases

    perf_raw = raw.get("overall_performance")
    if not isinstance(perf_raw, dict):
        perf_raw = {}
    perf = dict(report["overall_performance"])
    perf.update(perf_raw)
    total = _num(perf_raw.get("total_score"))
    if total is None:
        total = sum(float(phases[p]["score"]) for p in PHASES)
    perf["total_score"] = _clamp(total, TOTAL_MAX)
    if str(perf.get("rating") or "") not in RATINGS:
        perf["rating"] = rating_for(float(perf["total_score"]))
    perf["summary"] = str(perf.get("summary") or "")
    report["overall_performance"] = perf

    rank = dict(report["rank_assessment"])
    rank_raw = raw.get("rank_assessment")
    if not isinstance(rank_raw, dict):
        rank_raw = {}
    rank.update(rank_raw)
    if str(rank_raw.get("current_rank") or "") not in RATINGS:
        rank["current_rank"] = perf["rating"]
    rank.setdefault("next_level_requirements", "")
    report["rank_assessment"] = rank
    return report


def report_title(report: dict[str, Any]) -> str:
    perf = report.get("overall_performance") or {}
    return (
        f"{report.get('rep_name') or UNKNOWN} - {report.get('client_name') or UNKNOWN} "
        f"({perf.get('rating') or rating_for(0)}: {perf.get('total_score', 0)}/{TOTAL_MAX})"
    )


def report_summary(report: dict[str, Any]) -> str:
    perf = report.get("overall_performance") or {}
    return str(perf.get("summary") or "")
