"""Deck persistence, versioning and review operations."""

import asyncio

import pytest

from models.flashcard_models import ReviewStatus
from services.deck_store import DeckStore, assemble_deck, module_id_from_card_id
from utils.exceptions import NotFoundError, ValidationError
from conftest import MODULE_ID, make_card


def _deck(title="Project Foundations", flagged=False):
    cards = [
        make_card(1, "What are the five project process groups?"),
        make_card(2, "How does critical path analysis schedule work?", review_required=flagged),
    ]
    return assemble_deck(MODULE_ID, "intro-pm", title, cards, None, [], "mock", 0.1)


def test_module_id_from_card_id():
    assert module_id_from_card_id("intro-pm::modules::0::C12") == "intro-pm::modules::0"
    assert module_id_from_card_id("no-ordinal") is None
    assert module_id_from_card_id("x::Cabc") is None


def test_saving_twice_moves_previous_deck_to_history(tmp_path):
    store = DeckStore(tmp_path)
    first = asyncio.run(store.save_deck(_deck("First")))
    second = asyncio.run(store.save_deck(_deck("Second")))

    assert first.deck.version == 1
    assert second.deck.version == 2
    assert second.is_current
    assert store.require_deck(MODULE_ID).module_title == "Second"

    history = store.list_history(MODULE_ID)
    assert [d.version for d in history] == [1]
    assert history[0].module_title == "First"


def test_concurrent_saves_keep_every_version(tmp_path):
    store = DeckStore(tmp_path)

    async def save_three():
        return await asyncio.gather(*(store.save_deck(_deck(f"Run {i}")) for i in range(3)))

    outcomes = asyncio.run(save_three())

    assert sorted(o.deck.version for o in outcomes) == [1, 2, 3]
    assert store.require_deck(MODULE_ID).version == 3
    assert [d.version for d in store.list_history(MODULE_ID)] == [2, 1]


def test_approved_deck_is_preserved(tmp_path):
    store = DeckStore(tmp_path, preserve_approved=True)
    asyncio.run(store.save_deck(_deck("Approved")))
    asyncio.run(store.set_review_status(MODULE_ID, "reviewer@example.com", ReviewStatus.APPROVED))

    outcome = asyncio.run(store.save_deck(_deck("Regenerated")))

    assert outcome.is_current is False
    current = store.require_deck(MODULE_ID)
    assert current.module_title == "Approved"
    assert current.review_status == ReviewStatus.APPROVED
    pending = store.list_history(MODULE_ID)[0]
    assert pending.module_title == "Regenerated"
    assert pending.version == 2


def test_approved_deck_superseded_when_preservation_off(tmp_path):
    store = DeckStore(tmp_path, preserve_approved=False)
    asyncio.run(store.save_deck(_deck("Approved")))
    asyncio.run(store.set_review_status(MODULE_ID, "reviewer", ReviewStatus.APPROVED))

    outcome = asyncio.run(store.save_deck(_deck("Regenerated")))

    assert outcome.is_current
    assert store.require_deck(MODULE_ID).module_title == "Regenerated"
    assert store.list_history(MODULE_ID)[0].review_status == ReviewStatus.APPROVED


def test_pending_is_not_a_review_decision(tmp_path):
    store = DeckStore(tmp_path)
    asyncio.run(store.save_deck(_deck()))
    with pytest.raises(ValidationError):
        asyncio.run(store.set_review_status(MODULE_ID, "reviewer", ReviewStatus.PENDING))


def test_missing_deck_and_card(tmp_path):
    store = DeckStore(tmp_path)
    assert store.get_deck(MODULE_ID) is None
    with pytest.raises(NotFoundError):
        store.require_deck(MODULE_ID)
    with pytest.raises(NotFoundError):
        store.find_card(f"{MODULE_ID}::C1")


def test_edit_card_enforces_limits(tmp_path):
    store = DeckStore(tmp_path)
    asyncio.run(store.save_deck(_deck()))
    card_id = f"{MODULE_ID}::C1"

    updated = asyncio.run(store.update_card(card_id, answer=" ".join(["term"] * 55)))

    assert len(updated.answer.split()) == 40
    _, stored = store.find_card(card_id)
    assert stored.answer == updated.answer

    with pytest.raises(ValidationError):
        asyncio.run(store.update_card(card_id, question="Short?"))
    with pytest.raises(ValidationError):
        asyncio.run(store.update_card(card_id))


def test_review_queue_and_card_approval(tmp_path):
    store = DeckStore(tmp_path)
    asyncio.run(store.save_deck(_deck(flagged=True)))

    queue = store.review_queue()
    assert [item["card"]["card_id"] for item in queue] == [f"{MODULE_ID}::C2"]
    assert queue[0]["module_id"] == MODULE_ID

    approved = asyncio.run(store.approve_card(f"{MODULE_ID}::C2", "reviewer@example.com"))

    assert approved.review_required is False
    assert store.review_queue() == []
    deck = store.require_deck(MODULE_ID)
    assert deck.reviewed_by == "reviewer@example.com"
    assert deck.verification_rate == 1.0
