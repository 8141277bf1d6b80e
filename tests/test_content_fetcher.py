"""Catalog lookups, provider detection and text chunking."""

import json

import pytest

from models.flashcard_models import ModuleContentRequest
from services.content_fetcher import (
    ContentFetcher,
    detect_document_provider,
    detect_video_provider,
    prepare_chunks_from_content,
    split_text_into_chunks,
    unprocessed_media,
)
from utils.exceptions import NotFoundError, StorageError
from conftest import COURSE_SLUG, MODULE_ID


def _fetch(catalog_path, tmp_path, index, **kwargs):
    fetcher = ContentFetcher(catalog_path, tmp_path / "data")
    return fetcher.fetch_module_content(ModuleContentRequest(courseSlug=COURSE_SLUG, moduleIndex=index, **kwargs))


@pytest.mark.parametrize("url,provider", [
    ("https://drive.google.com/file/d/abc/view", "google_drive"),
    ("https://docs.google.com/document/d/abc", "google_drive"),
    ("https://1drv.ms/b/s!xyz", "onedrive"),
    ("https://acme.sharepoint.com/sites/x", "onedrive"),
    ("https://res.cloudinary.com/demo/raw/upload/a.pdf", "cloudinary"),
    ("file:///srv/slides.pdf", "local"),
    ("https://example.com/a.pdf", "other"),
    ("", "other"),
])
def test_document_provider_detection(url, provider):
    assert detect_document_provider(url) == provider


def test_video_provider_detection():
    assert detect_video_provider("https://www.youtube.com/watch?v=1") == "youtube"
    assert detect_video_provider("https://youtu.be/1") == "youtube"
    assert detect_video_provider("https://vimeo.com/1") == "vimeo"
    assert detect_video_provider("https://cdn.example.com/v.mp4") == "other"


def test_fetch_module_content(catalog_path, tmp_path):
    content = _fetch(catalog_path, tmp_path, 0)

    assert content.module_id == MODULE_ID
    assert content.module_title == "Project Foundations"
    assert content.course_title == "Introduction to Project Management"
    assert [d.id for d in content.documents] == ["doc-0", "doc-1"]
    assert [d.provider for d in content.documents] == ["google_drive", "cloudinary"]
    assert content.videos[0].provider == "youtube"
    assert [r.title for r in content.recordings] == ["Live Q&A"]
    assert content.media_count == 2


def test_recordings_can_be_skipped(catalog_path, tmp_path):
    content = _fetch(catalog_path, tmp_path, 0, includeRecordings=False)
    assert content.recordings == []


def test_mba_modules_are_used_when_index_exceeds_core_modules(tmp_path):
    catalog = {"courses": [{
        "slug": COURSE_SLUG,
        "modules": [{"title": "Only Core Module"}],
        "mbaModules": [{"title": "Strategy"}, {"title": "Finance"}, {"title": "Operations"}],
    }]}
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(catalog))

    content = _fetch(path, tmp_path, 2)

    assert content.module_title == "Operations"
    assert content.module_id == f"{COURSE_SLUG}::mbaModules::2"


def test_sandbox_courses_are_separate(catalog_path, tmp_path):
    fetcher = ContentFetcher(catalog_path, tmp_path / "data")
    content = fetcher.fetch_module_content(ModuleContentRequest(courseSlug="draft-course", moduleIndex=0, isSandbox=True))
    assert content.module_title == "Draft Module"
    with pytest.raises(NotFoundError) as exc:
        fetcher.fetch_module_content(ModuleContentRequest(courseSlug="draft-course", moduleIndex=0))
    assert exc.value.error_code == "COURSE_NOT_FOUND"


def test_missing_module(catalog_path, tmp_path):
    with pytest.raises(NotFoundError) as exc:
        _fetch(catalog_path, tmp_path, 7)
    assert exc.value.error_code == "MODULE_NOT_FOUND"


def test_list_course_modules(catalog_path, tmp_path):
    modules = ContentFetcher(catalog_path, tmp_path).list_course_modules(COURSE_SLUG)
    assert [m["module_id"] for m in modules] == [
        "intro-pm::modules::0",
        "intro-pm::modules::1",
        "intro-pm::mbaModules::0",
        "intro-pm::mbaModules::1",
    ]
    assert modules[0]["documentCount"] == 2


def test_transcripts_become_chunks(catalog_path, tmp_path):
    content = _fetch(catalog_path, tmp_path, 0)
    chunks = prepare_chunks_from_content(content)

    assert len(chunks) == 1
    assert chunks[0].chunk_id == f"{MODULE_ID}::video::vid-0::0"
    assert chunks[0].end_sec == 720
    assert {item["id"] for item in unprocessed_media(content)} == {"doc-0", "doc-1", "rec-0"}


def test_split_text_respects_window():
    paragraph = " ".join(["Sentence number one is here."] * 30)
    text = "\n\n".join([paragraph] * 4)

    pieces = split_text_into_chunks(text, max_tokens=100)

    assert len(pieces) > 1
    assert all(len(p) <= 400 for p in pieces)
    assert split_text_into_chunks("   ") == []
    assert split_text_into_chunks("short text") == ["short text"]


def test_prepared_chunk_file_validation(tmp_path):
    fetcher = ContentFetcher(tmp_path / "none.json", tmp_path)
    assert fetcher.load_prepared_chunks(MODULE_ID) is None

    (tmp_path / "chunks").mkdir()
    (tmp_path / "chunks" / "intro-pm__modules__0.json").write_text(json.dumps([{"text": "missing id"}]))
    with pytest.raises(StorageError):
        fetcher.load_prepared_chunks(MODULE_ID)
