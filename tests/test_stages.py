"""Stage A (tolerant) and Stage B (strict) behaviour with fake chat clients."""

import asyncio
import json

import pytest

from models.flashcard_models import MatchKind
from services.evidence_matcher import match_evidence
from services.stage_a import StageASummarizer, fallback_stage_a, parse_stage_a
from services.stage_b import FlashcardGenerator
from utils.exceptions import NetworkError, ParseError
from conftest import MODULE_ID, SENTENCES, FakeChatClient, make_chunks


def _card(question, quote, bloom="Understand", difficulty="medium", confidence=0.9):
    return {
        "question": question,
        "answer": "A short grounded answer.",
        "rationale": "Checks recall of the source.",
        "evidence_quote": quote,
        "bloom_level": bloom,
        "difficulty": difficulty,
        "confidence": confidence,
    }


def _run_stage_a(llm, chunks):
    summarizer = StageASummarizer(llm=llm, initial_delay_ms=0)
    return asyncio.run(summarizer.run(MODULE_ID, "Project Foundations", "intro-pm", chunks))


def _run_stage_b(llm, chunks, **kwargs):
    generator = FlashcardGenerator(llm=llm, initial_delay_ms=0)
    stage_a = fallback_stage_a("Project Foundations", chunks)
    return asyncio.run(generator.run(MODULE_ID, "Project Foundations", chunks, stage_a, **kwargs))


# Stage A

def test_stage_a_parses_fenced_json():
    chunks = make_chunks(count=4)
    body = {
        "module_summary": [{"point": "PM applies skills to activities", "supports": [chunks[0].chunk_id, "ghost"]}],
        "key_topics": [{"topic": "Process groups", "supports": [chunks[0].chunk_id]}],
        "coverage_map": [],
    }
    llm = FakeChatClient([f"Here you go:\n```json\n{json.dumps(body)}\n```"])

    output = _run_stage_a(llm, chunks)

    assert output.degraded is False
    assert output.module_summary[0].supports == [chunks[0].chunk_id]
    assert output.key_topics[0].topic == "Process groups"


def test_stage_a_garbage_degrades_to_fallback():
    chunks = make_chunks(count=4)
    output = _run_stage_a(FakeChatClient(["this is not json at all"]), chunks)

    assert output.degraded is True
    assert len(output.module_summary) == 1
    assert output.module_summary[0].point == "Overview of Project Foundations"
    assert output.module_summary[0].supports == [chunks[0].chunk_id]
    assert len(output.key_topics) == 1


def test_stage_a_schema_violation_degrades():
    chunks = make_chunks(count=4)
    output = _run_stage_a(FakeChatClient([{"module_summary": "wrong type", "key_topics": []}]), chunks)
    assert output.degraded is True


def test_stage_a_network_exhaustion_degrades():
    chunks = make_chunks(count=4)
    llm = FakeChatClient([NetworkError("timeout", provider="fake")])
    output = _run_stage_a(llm, chunks)

    assert output.degraded is True
    assert len(llm.calls) == 3


def test_stage_a_truncates_long_lists():
    chunks = make_chunks(count=4)
    body = {
        "module_summary": [{"point": f"Point {i}", "supports": []} for i in range(15)],
        "key_topics": [{"topic": f"Topic {i}", "supports": []} for i in range(20)],
    }
    output = parse_stage_a(json.dumps(body), chunks)
    assert len(output.module_summary) == 10
    assert len(output.key_topics) == 12


# Stage B

def test_stage_b_invalid_json_is_hard_failure():
    with pytest.raises(ParseError) as exc:
        _run_stage_b(FakeChatClient(["{not valid"]), make_chunks(count=4))
    assert "invalid JSON" in exc.value.message


def test_stage_b_schema_violation_surfaces_first_error():
    bad = {"cards": [{"question": "Too short", "answer": "x", "evidence_quote": "y",
                      "bloom_level": "Remember", "difficulty": "easy"}]}
    with pytest.raises(ParseError) as exc:
        _run_stage_b(FakeChatClient([bad]), make_chunks(count=4))
    assert exc.value.error_code == "SCHEMA_VALIDATION_FAILED"
    assert "cards.0.question" in exc.value.message


def test_stage_b_cards_have_evidence_and_bounded_confidence():
    chunks = make_chunks(count=4)
    body = {"cards": [
        _card("What does project management apply?", SENTENCES[0], confidence=1.7),
        _card("Which five process groups are defined?", SENTENCES[1].upper(), bloom="remember", difficulty="EASY"),
        _card("What is the capital of a made-up country?", "This sentence is not in any chunk whatsoever.",
              confidence=None),
    ]}

    output = _run_stage_b(FakeChatClient([body]), chunks)

    assert [c.card_id for c in output.cards] == [f"{MODULE_ID}::C1", f"{MODULE_ID}::C2", f"{MODULE_ID}::C3"]
    for card in output.cards:
        assert len(card.evidence) >= 1
        assert 0.0 <= card.confidence_score <= 1.0
    assert output.cards[0].confidence_score == 1.0
    assert output.cards[1].bloom_level.value == "Remember"
    assert output.cards[1].difficulty.value == "easy"
    assert output.cards[1].review_required is False

    unmatched = output.cards[2]
    assert unmatched.review_required is True
    assert unmatched.confidence_score == 0.8
    assert unmatched.evidence[0].chunk_id == chunks[0].chunk_id
    assert unmatched.evidence[0].match == MatchKind.FALLBACK
    assert output.warnings == ["Card 3: could not match evidence quote to chunks"]


def test_stage_b_mock_mode_goes_through_parser():
    chunks = make_chunks(count=6)
    generator = FlashcardGenerator(mock_mode=True)
    output = asyncio.run(generator.run(
        MODULE_ID, "Project Foundations", chunks, fallback_stage_a("Project Foundations", chunks),
        target_card_count=10,
    ))
    assert output.generated_count == 10
    assert all(card.verified for card in output.cards)


# Evidence matching

def test_evidence_prefix_match():
    chunks = make_chunks(count=4)
    quote = SENTENCES[2][:60] + " but with a paraphrased ending that never appears."
    match = match_evidence(quote, chunks)
    assert match.kind == MatchKind.PREFIX
    assert match.chunk.chunk_id == chunks[1].chunk_id


def test_evidence_exact_match_across_chunks():
    chunks = make_chunks(count=4)
    match = match_evidence("  " + SENTENCES[7].lower() + " ", chunks)
    assert match.kind == MatchKind.EXACT
    assert match.chunk.chunk_id == chunks[3].chunk_id
