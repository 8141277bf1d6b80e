"""
Module content fetcher.

Resolves {courseSlug, moduleIndex} against the course catalog (a JSON file
exported from the course platform) into a ModuleContent descriptor with
documents, videos and recordings, and turns any inline text/transcripts
into chunks.

Catalog layout:
    {
      "courses":        [{"slug", "title", "modules": [...], "mbaModules": [...]}],
      "sandboxCourses": [...same shape...],
      "recordings":     [{"courseSlug", "moduleIndex", "title", "fileUrl",
                          "classDate", "description", "isVisible", "transcript"}]
    }
"""

import re
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from models.flashcard_models import (
    Chunk,
    DocumentContent,
    ModuleContent,
    ModuleContentRequest,
    RecordingContent,
    VideoContent,
)
from utils.exceptions import NotFoundError, StorageError
from utils.file_storage import read_json_file, sanitize_filename

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_TOKENS = 500


def detect_document_provider(url: str) -> str:
    if not url:
        return "other"
    lower_url = url.lower()
    if "drive.google.com" in lower_url or "docs.google.com" in lower_url:
        return "google_drive"
    if "onedrive.live.com" in lower_url or "1drv.ms" in lower_url or "sharepoint.com" in lower_url:
        return "onedrive"
    if "cloudinary.com" in lower_url:
        return "cloudinary"
    if lower_url.startswith(("file://", "/")):
        return "local"
    return "other"


def detect_video_provider(url: str) -> str:
    if not url:
        return "other"
    lower_url = url.lower()
    if "youtube.com" in lower_url or "youtu.be" in lower_url:
        return "youtube"
    if "vimeo.com" in lower_url:
        return "vimeo"
    return "other"


def make_module_id(course_slug: str, module_type: str, module_index: int) -> str:
    return f"{course_slug}::{module_type}::{module_index}"


def split_text_into_chunks(text: str, max_tokens: int = DEFAULT_MAX_CHUNK_TOKENS) -> List[str]:
    """
    Split text into pieces of roughly max_tokens (4 chars per token).
    Paragraph boundaries first, sentences for oversized paragraphs.
    """
    max_chars = max_tokens * 4
    text = (text or "").strip()
    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    pieces: List[str] = []
    current = ""
    for paragraph in re.split(r"\n\s*\n+", text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(current) + len(paragraph) + 2 <= max_chars:
            current = f"{current}\n\n{paragraph}" if current else paragraph
            continue
        if current:
            pieces.append(current)
            current = ""
        if len(paragraph) <= max_chars:
            current = paragraph
            continue
        for sentence in re.split(r"(?<=[.!?])\s+", paragraph):
            if len(current) + len(sentence) + 1 <= max_chars:
                current = f"{current} {sentence}" if current else sentence
            else:
                if current:
                    pieces.append(current)
                # Sentences longer than the window are hard-split
                while len(sentence) > max_chars:
                    pieces.append(sentence[:max_chars])
                    sentence = sentence[max_chars:]
                current = sentence
    if current:
        pieces.append(current)
    return pieces


class ContentFetcher:
    """Course catalog lookups plus local pre-extracted chunk files."""

    def __init__(self, catalog_path: Path, data_dir: Path):
        self.catalog_path = Path(catalog_path)
        self.chunks_dir = Path(data_dir) / "chunks"

    def _load_catalog(self) -> Dict[str, Any]:
        catalog = read_json_file(self.catalog_path)
        if catalog is None:
            logger.warning(f"Course catalog not found or unreadable at {self.catalog_path}")
            return {}
        return catalog

    def _find_course(self, catalog: Dict[str, Any], course_slug: str, is_sandbox: bool) -> Dict[str, Any]:
        key = "sandboxCourses" if is_sandbox else "courses"
        for course in catalog.get(key) or []:
            if course.get("slug") == course_slug:
                return course
        raise NotFoundError(f"Course not found: {course_slug}", error_code="COURSE_NOT_FOUND")

    def fetch_module_content(self, request: ModuleContentRequest) -> ModuleContent:
        """Resolve one module; checks `modules` first, then `mbaModules`."""
        logger.info(f"[ContentFetcher] Fetching content for {request.courseSlug}/module-{request.moduleIndex}")
        catalog = self._load_catalog()
        course = self._find_course(catalog, request.courseSlug, request.isSandbox)

        index = request.moduleIndex
        module = None
        module_type = "modules"
        modules = course.get("modules") or []
        mba_modules = course.get("mbaModules") or []
        if len(modules) > index:
            module = modules[index]
        elif len(mba_modules) > index:
            module = mba_modules[index]
            module_type = "mbaModules"
        if not module:
            raise NotFoundError(
                f"Module not found: {request.courseSlug}/module-{index}",
                error_code="MODULE_NOT_FOUND",
            )

        module_id = make_module_id(request.courseSlug, module_type, index)

        documents = []
        for i, doc in enumerate(module.get("documents") or []):
            url = doc.get("url") or doc.get("fileUrl") or ""
            if not url:
                continue
            documents.append(DocumentContent(
                id=f"doc-{i}",
                title=doc.get("title") or "Untitled Document",
                url=url,
                type=doc.get("type") or "link",
                provider=detect_document_provider(url),
                file_type=doc.get("fileType"),
                public_id=doc.get("publicId"),
                text=doc.get("text"),
            ))

        videos = []
        for i, video in enumerate(module.get("videos") or []):
            if not video.get("url"):
                continue
            videos.append(VideoContent(
                id=f"vid-{i}",
                title=video.get("title") or "Untitled Video",
                url=video["url"],
                duration=video.get("duration") or 0,
                provider=detect_video_provider(video["url"]),
                transcript=video.get("transcript"),
            ))

        recordings = []
        if request.includeRecordings:
            recordings = self._module_recordings(catalog, request.courseSlug, index)

        logger.info(
            f"[ContentFetcher] Found {len(documents)} documents, {len(videos)} videos, "
            f"{len(recordings)} recordings"
        )
        return ModuleContent(
            module_id=module_id,
            course_id=request.courseSlug,
            module_title=module.get("title") or f"Module {index + 1}",
            course_title=course.get("title") or "",
            documents=documents,
            videos=videos,
            recordings=recordings,
            headings=[h for h in module.get("headings") or [] if isinstance(h, str)],
        )

    def _module_recordings(self, catalog: Dict[str, Any], course_slug: str, module_index: int) -> List[RecordingContent]:
        matches = [
            rec for rec in catalog.get("recordings") or []
            if rec.get("courseSlug") == course_slug
            and rec.get("moduleIndex") == module_index
            and rec.get("isVisible", True)
        ]
        matches.sort(key=lambda rec: str(rec.get("classDate") or ""), reverse=True)

        recordings = []
        for i, rec in enumerate(matches):
            try:
                recordings.append(RecordingContent(
                    id=str(rec.get("id") or f"rec-{i}"),
                    title=rec.get("title") or "Untitled Recording",
                    url=rec.get("fileUrl") or "",
                    date=str(rec["classDate"]) if rec.get("classDate") else None,
                    description=rec.get("description"),
                    transcript=rec.get("transcript"),
                ))
            except PydanticValidationError as e:
                logger.warning(f"[ContentFetcher] Skipping malformed recording entry: {e.error_count()} errors")
        return recordings

    def list_course_modules(self, course_slug: str, is_sandbox: bool = False) -> List[Dict[str, Any]]:
        course = self._find_course(self._load_catalog(), course_slug, is_sandbox)
        result = []
        for module_type, label in (("modules", "Module"), ("mbaModules", "MBA Module")):
            for index, module in enumerate(course.get(module_type) or []):
                result.append({
                    "index": index,
                    "module_id": make_module_id(course_slug, module_type, index),
                    "title": module.get("title") or f"{label} {index + 1}",
                    "type": module_type,
                    "documentCount": len(module.get("documents") or []),
                    "videoCount": len(module.get("videos") or []),
                })
        return result

    def list_all_courses(self, include_sandbox: bool = False) -> List[Dict[str, Any]]:
        catalog = self._load_catalog()
        keys = [("courses", False)] + ([("sandboxCourses", True)] if include_sandbox else [])
        result = []
        for key, is_sandbox in keys:
            for course in catalog.get(key) or []:
                result.append({
                    "slug": course.get("slug"),
                    "title": course.get("title"),
                    "moduleCount": len(course.get("modules") or []) + len(course.get("mbaModules") or []),
                    "isSandbox": is_sandbox,
                })
        return result

    # Pre-extracted chunks

    def _chunks_path(self, module_id: str) -> Path:
        return self.chunks_dir / f"{sanitize_filename(module_id)}.json"

    def load_prepared_chunks(self, module_id: str) -> Optional[List[Chunk]]:
        """
        Chunks extracted ahead of time for this module, if a chunk file exists.
        Accepts either a bare list or {"chunks": [...]}.
        """
        data = read_json_file(self._chunks_path(module_id))
        if data is None:
            return None
        items = data.get("chunks", []) if isinstance(data, dict) else data
        try:
            chunks = [Chunk.model_validate(item) for item in items]
        except PydanticValidationError as e:
            raise StorageError(
                f"Invalid chunk file for module {module_id}: {e.errors()[0]['msg']}",
                error_code="INVALID_CHUNK_FILE",
            )
        logger.info(f"[ContentFetcher] Loaded {len(chunks)} prepared chunks for {module_id}")
        return chunks


def prepare_chunks_from_content(content: ModuleContent, max_chunk_tokens: int = DEFAULT_MAX_CHUNK_TOKENS) -> List[Chunk]:
    """
    Chunk every source that already carries text: document text, video and
    recording transcripts. Sources without text are skipped; they need
    transcription/extraction first.
    """
    sources = []
    for doc in content.documents:
        sources.append(("doc", doc.id, doc.title, doc.provider, doc.text, None))
    for video in content.videos:
        end_sec = video.duration * 60 if video.duration else None
        sources.append(("video", video.id, video.title, "other", video.transcript, end_sec))
    for rec in content.recordings:
        sources.append(("rec", rec.id, rec.title, detect_document_provider(rec.url), rec.transcript, None))

    chunks = []
    for kind, source_id, title, provider, text, end_sec in sources:
        pieces = split_text_into_chunks(text or "", max_chunk_tokens)
        for i, piece in enumerate(pieces):
            chunks.append(Chunk(
                chunk_id=f"{content.module_id}::{kind}::{source_id}::{i}",
                text=piece,
                source_file=title,
                provider=provider if provider in ("local", "google_drive", "onedrive", "cloudinary") else "other",
                slide_or_page=f"part {i + 1}/{len(pieces)}" if len(pieces) > 1 else None,
                start_sec=0.0 if kind in ("video", "rec") else None,
                end_sec=end_sec,
                heading=title,
                tokens_est=(len(piece) + 3) // 4,
            ))
    logger.info(f"[ContentFetcher] Prepared {len(chunks)} chunks from {len(sources)} sources in {content.module_id}")
    return chunks


def unprocessed_media(content: ModuleContent) -> List[Dict[str, str]]:
    """Videos/recordings/documents with no text yet; targets for a transcription job."""
    pending = []
    for video in content.videos:
        if not video.transcript:
            pending.append({"type": "video", "id": video.id, "title": video.title, "url": video.url})
    for rec in content.recordings:
        if not rec.transcript:
            pending.append({"type": "recording", "id": rec.id, "title": rec.title, "url": rec.url})
    for doc in content.documents:
        if not doc.text:
            pending.append({"type": "document", "id": doc.id, "title": doc.title, "url": doc.url})
    return pending
