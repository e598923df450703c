"""
Evaluation prompt assembly
Maps uploaded segments onto test questions and renders the examiner prompt.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

SEGMENT_KEY = re.compile(r"^part([123])-q(.+)$")


@dataclass(frozen=True)
class Segment:
    """One recorded answer, positioned by part and question number"""
    segment_key: str
    part_number: int
    question_number: int
    question_text: str


def _questions(payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    parts = payload.get("speakingParts") if isinstance(payload, Mapping) else None
    questions = []
    for part in parts if isinstance(parts, list) else []:
        try:
            part_number = int(part.get("part_number"))
        except (TypeError, ValueError):
            continue
        if part_number not in (1, 2, 3):
            continue
        for question in part.get("questions") or []:
            question_id = str(question.get("id") or "")
            if not question_id:
                continue
            try:
                question_number = int(question.get("question_number"))
            except (TypeError, ValueError):
                question_number = 0
            questions.append({
                "id": question_id,
                "part_number": part_number,
                "question_number": question_number,
                "question_text": str(question.get("question_text") or ""),
            })
    return questions


def order_segments(payload: Mapping[str, Any], segment_keys) -> List[Segment]:
    """
    Match segment keys ('part<N>-q<questionId>') to questions.

    Keys that do not parse or reference an unknown question are dropped.
    The result is sorted by part, then question number.
    """
    by_id = {q["id"]: q for q in _questions(payload)}
    segments = []
    for key in segment_keys:
        match = SEGMENT_KEY.match(str(key))
        if not match:
            continue
        question = by_id.get(match.group(2))
        if not question:
            continue
        segments.append(Segment(
            segment_key=key,
            part_number=question["part_number"],
            question_number=question["question_number"],
            question_text=question["question_text"],
        ))
    segments.sort(key=lambda s: (s.part_number, s.question_number))
    return segments


def build_prompt(
    payload: Mapping[str, Any],
    topic: Optional[str],
    difficulty: Optional[str],
    fluency_flag: bool,
    segments: List[Segment],
) -> str:
    """Render the examiner prompt for the ordered segments"""
    count = len(segments)
    mapping = "\n".join(
        f'AUDIO_{i}: "{s.segment_key}" -> Part {s.part_number}, Question {s.question_number}: "{s.question_text}"'
        for i, s in enumerate(segments)
    )
    lines = [
        "You are a certified senior IELTS Speaking examiner. Evaluate exactly as an official examiner.",
        "Return ONLY valid JSON.",
        f"CONTEXT: Topic: {topic or 'General'}, Difficulty: {difficulty or 'Medium'}, Questions: {count}",
    ]
    if fluency_flag:
        lines.append("Part 2 speaking time was under 80 seconds; apply a fluency penalty.")
    lines += [
        "",
        "Transcribe only what the candidate actually said. Mark unclear audio as [INAUDIBLE] and silence as [NO SPEECH DETECTED].",
        "",
        f"The {count} audio files are provided in this fixed order:",
        mapping,
        "",
        "Output schema:",
        '{"overall_band": 6.0, "criteria": {"fluency_coherence": {"band": 6.0, "feedback": "..."}, '
        '"lexical_resource": {...}, "grammatical_range": {...}, "pronunciation": {...}}, '
        '"summary": "...", "part_analysis": [...], "improvement_priorities": [...], '
        '"transcripts_by_part": {"1": "..."}, "transcripts_by_question": {"1": [{"segment_key": "...", "transcript": "..."}]}, '
        '"modelAnswers": [{"segment_key": "...", "partNumber": 1, "questionNumber": 1, "candidateResponse": "...", '
        '"estimatedBand": 5.5, "targetBand": 6.5, "modelAnswer": "..."}]}',
        "",
        f"QUESTIONS JSON: {json.dumps(_questions(payload))}",
        f"Return exactly {count} modelAnswers, one per audio file, keyed by segment_key.",
    ]
    return "\n".join(lines)
