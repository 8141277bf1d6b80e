"""
Shared fixtures for the flashcard pipeline tests.

Run with:
    python3 -m pytest tests -v

Everything runs offline: mock embeddings, the in-memory vector store and
fake chat clients stand in for the network.
"""

import sys
import os
import json

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from clients.llm_client import LLMResponse
from clients.vector_store import MemoryVectorStore
from models.flashcard_models import BloomLevel, Chunk, Difficulty, Evidence, Flashcard
from services.flashcard_service import FlashcardService
from services.job_queue import JobQueue
from utils.config import PipelineConfig

COURSE_SLUG = "intro-pm"
MODULE_ID = "intro-pm::modules::0"

SENTENCES = [
    "Project management applies knowledge, skills, tools and techniques to project activities.",
    "The five process groups are initiating, planning, executing, monitoring and closing.",
    "A work breakdown structure decomposes deliverables into smaller manageable components.",
    "Critical path analysis identifies the longest sequence of dependent scheduled tasks.",
    "Earned value management compares planned value against actual cost and earned value.",
    "Stakeholder registers record the interests, influence and expectations of each party.",
    "Risk registers track identified threats alongside their probability and impact ratings.",
    "Change control boards review requested changes before the baseline is modified.",
    "Agile teams deliver working increments in short iterations called sprints.",
    "Retrospectives let the team inspect its process and plan concrete improvements.",
    "Resource leveling shifts task start dates to resolve over-allocated team members.",
    "Quality audits confirm that project activities comply with organizational policies.",
]


def make_chunks(module_id: str = MODULE_ID, count: int = 6) -> list:
    """Chunks with two distinct sentences each, one per page."""
    chunks = []
    for i in range(count):
        first = SENTENCES[(2 * i) % len(SENTENCES)]
        second = SENTENCES[(2 * i + 1) % len(SENTENCES)]
        chunks.append(Chunk(
            chunk_id=f"{module_id}::doc::{i}",
            text=f"{first} {second}",
            source_file="pm-fundamentals.pdf",
            provider="local",
            slide_or_page=i + 1,
            heading=f"Section {i + 1}",
            tokens_est=40,
        ))
    return chunks


def make_card(ordinal: int, question: str, module_id: str = MODULE_ID, difficulty: str = "medium",
              bloom: str = "Understand", answer: str = "A short answer.", review_required: bool = False) -> Flashcard:
    return Flashcard(
        card_id=f"{module_id}::C{ordinal}",
        question=question,
        answer=answer,
        evidence=[Evidence(chunk_id=f"{module_id}::doc::0", source_file="pm-fundamentals.pdf",
                           excerpt=SENTENCES[0])],
        bloom_level=BloomLevel(bloom),
        difficulty=Difficulty(difficulty),
        review_required=review_required,
    )


class FakeChatClient:
    """Returns queued responses in order; records every call."""

    provider = "fake"

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def complete(self, system_prompt, user_prompt, temperature=0.1, max_tokens=4096, json_mode=True, model=None):
        self.calls.append({"system": system_prompt, "user": user_prompt, "model": model})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        text = item if isinstance(item, str) else json.dumps(item)
        return LLMResponse(text=text, model=model or "fake-model", input_tokens=10, output_tokens=10)


@pytest.fixture
def catalog_path(tmp_path):
    catalog = {
        "courses": [{
            "slug": COURSE_SLUG,
            "title": "Introduction to Project Management",
            "modules": [
                {
                    "title": "Project Foundations",
                    "documents": [
                        {"title": "PM Fundamentals", "url": "https://drive.google.com/file/d/abc/view"},
                        {"title": "Glossary", "url": "https://res.cloudinary.com/demo/raw/upload/glossary.pdf"},
                    ],
                    "videos": [
                        {"title": "Kickoff", "url": "https://youtu.be/xyz", "duration": 12,
                         "transcript": "Welcome to the kickoff. Today we define what a project is and why it ends."},
                    ],
                },
                {"title": "Empty Module", "documents": [], "videos": []},
            ],
            "mbaModules": [
                {"title": "Strategy", "documents": [], "videos": [{"title": "Case", "url": "https://vimeo.com/1"}]},
                {"title": "Finance", "documents": [], "videos": []},
            ],
        }],
        "sandboxCourses": [{"slug": "draft-course", "title": "Draft", "modules": [{"title": "Draft Module"}]}],
        "recordings": [
            {"courseSlug": COURSE_SLUG, "moduleIndex": 0, "title": "Live Q&A",
             "fileUrl": "https://onedrive.live.com/rec1", "classDate": "2025-01-10", "isVisible": True},
            {"courseSlug": COURSE_SLUG, "moduleIndex": 0, "title": "Hidden",
             "fileUrl": "https://onedrive.live.com/rec2", "classDate": "2025-01-11", "isVisible": False},
        ],
    }
    path = tmp_path / "courses.json"
    path.write_text(json.dumps(catalog))
    return path


@pytest.fixture
def mock_config(tmp_path, catalog_path):
    return PipelineConfig(mock_mode=True, data_dir=tmp_path / "data", course_catalog_path=catalog_path)


@pytest.fixture
def service(mock_config):
    return FlashcardService(
        mock_config,
        store=MemoryVectorStore(),
        job_queue=JobQueue(mirror_to_redis=False),
        retry_delay_ms=0,
    )
