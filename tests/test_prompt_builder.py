"""
Segment ordering and prompt rendering
"""
from app.services.prompt_builder import build_prompt, order_segments

from conftest import SPEAKING_PAYLOAD


def test_segments_sorted_by_part_then_question():
    keys = ["part2-q21", "part1-q12", "part1-q11"]

    segments = order_segments(SPEAKING_PAYLOAD, keys)

    assert [s.segment_key for s in segments] == ["part1-q11", "part1-q12", "part2-q21"]
    assert segments[2].part_number == 2
    assert segments[0].question_text == "Where do you live?"


def test_unknown_and_malformed_keys_dropped():
    segments = order_segments(SPEAKING_PAYLOAD, ["part1-q11", "part1-q99", "intro", "part4-q11"])

    assert [s.segment_key for s in segments] == ["part1-q11"]


def test_prompt_maps_audio_in_order():
    segments = order_segments(SPEAKING_PAYLOAD, ["part2-q21", "part1-q11"])

    prompt = build_prompt(SPEAKING_PAYLOAD, "Hometown", "Hard", True, segments)

    assert 'AUDIO_0: "part1-q11" -> Part 1, Question 1' in prompt
    assert 'AUDIO_1: "part2-q21" -> Part 2, Question 1' in prompt
    assert "Topic: Hometown" in prompt
    assert "fluency penalty" in prompt
    assert "Return exactly 2 modelAnswers" in prompt


def test_prompt_without_fluency_flag():
    segments = order_segments(SPEAKING_PAYLOAD, ["part1-q11"])

    prompt = build_prompt(SPEAKING_PAYLOAD, None, None, False, segments)

    assert "fluency penalty" not in prompt
    assert "Topic: General" in prompt
