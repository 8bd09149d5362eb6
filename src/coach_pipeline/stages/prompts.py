from __future__ import annotations

from coach_pipeline.jobs.models import TranscriptSection
from coach_pipeline.stages.rubric import PHASES, RATING_BANDS


def clock(minutes: float) -> str:
    m = int(minutes)
    return f"{m // 60}:{m % 60:02d}"


def chunk_prompt(
    *,
    chunk_index: int,
    total_chunks: int,
    start_minutes: float,
    end_minutes: float,
    previous_summary: str = "",
) -> str:
    time_range = f"{clock(start_minutes)} to {clock(end_minutes)}"
    context = ""
    if chunk_index > 0 and previous_summary:
        context = f"\nPREVIOUS CONTEXT (summary of what happened before):\n{previous_summary}\n"
    return (
        "You are transcribing a section of an audio recording.\n\n"
        f"IMPORTANT: Focus on the time range {time_range} (chunk {chunk_index + 1} of {total_chunks}).\n"
        f"{context}\n"
        "Please provide:\n"
        "1. A descriptive TITLE for this section\n"
        "2. The full TRANSCRIPT of what is said in this time range, with speaker labels\n"
        "3. A brief SUMMARY (2-3 sentences)\n"
        "4. KEY TOPICS discussed (3-5 topics, comma separated)\n\n"
        "Format your response EXACTLY like this:\n"
        "===TITLE===\n[Section title]\n"
        "===TRANSCRIPT===\n[Full transcript]\n"
        "===SUMMARY===\n[Brief summary]\n"
        "===TOPICS===\n[Topic 1, Topic 2, Topic 3]\n"
        "===END===\n\n"
        f"Only transcribe content from approximately {time_range}."
    )


def _rubric_outline() -> str:
    lines: list[str] = []
    for phase, (mx, cps) in PHASES.items():
        lines.append(f"- {phase.upper()} phase ({mx} points): " + "; ".join(f"{n} ({m})" for n, m in cps))
    bands = ", ".join(f"{name} >= {lo}" for lo, name in RATING_BANDS)
    lines.append(f"Ratings: {bands}")
    return "\n".join(lines)


def synthesis_prompt(sections: list[TranscriptSection], *, duration_minutes: float) -> str:
    parts: list[str] = []
    for s in sections:
        head = f"[{clock(s.start_offset_seconds / 60)} - {clock(s.end_offset_seconds / 60)}] {s.title}"
        if s.failed:
            parts.append(f"{head}\n(transcription unavailable for this section)")
        else:
            parts.append(f"{head}\n{s.content}")
    transcript = "\n\n".join(parts)
    return (
        "You are a sales coaching analyst. Score this sales call against the W4 rubric.\n\n"
        f"AUDIO DURATION: {int(duration_minutes)} minutes.\n\n"
        f"RUBRIC:\n{_rubric_outline()}\n\n"
        "Return a single JSON object with the keys client_name, rep_name, company_name, "
        "overall_performance {total_score, rating, summary}, phases {why, what, who, when: "
        "{score, max_score, checkpoints[{name, score, max_score, justification}]}}, "
        "what_done_right, areas_for_improvement, weakest_elements, coaching_recommendations, "
        "rank_assessment {current_rank, next_level_requirements}, quick_wins.\n\n"
        f"TRANSCRIPT:\n{transcript}\n\n"
        "RETURN ONLY VALID JSON."
    )
