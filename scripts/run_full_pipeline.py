"""
CLI example to run the complete KidBook pipeline end-to-end on one machine.

Usage:
    python scripts/run_full_pipeline.py \
        --inputs book_inputs.yaml \
        --owner parent@example.com \
        --storage-dir ./artifacts
"""

from __future__ import annotations

import argparse
import dataclasses
import functools
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict

import yaml

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from kidbook.ai_generation import ReplicateImageGenerator
from kidbook.common import DailyLimitReached, PipelineSettings
from kidbook.pdf_generation import StorybookPDFBuilder
from kidbook.pipeline import (
    BookCreationService,
    DailyBookLimiter,
    InMemoryTaskQueue,
    PipelineOrchestrator,
    RetryPolicy,
    StageWorkerPool,
    wait_for_book,
)
from kidbook.records import BookSnapshot, SqliteBookRepository
from kidbook.records.models import (
    ITEM_COMPLETE,
    PROGRESS_KEYS,
    STATUS_COMPLETE,
    STATUS_FAILED,
)
from kidbook.storage import LocalArtifactStore, download
from kidbook.story_generation import BookPlanGenerator

_STAGE_LABELS = {
    "generating_story": "Writing the story",
    "generating_character_refs": "Drawing character references",
    "generating_images": "Illustrating pages",
    "generating_pdf": "Assembling the PDF",
    STATUS_COMPLETE: "Done",
    STATUS_FAILED: "Failed",
}


class ProgressTracker:
    """
    Turns repository change notifications into command-line progress bars.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stage_bar = tqdm(total=len(PROGRESS_KEYS), desc="Stages", unit="stage")
        self._page_bar: tqdm | None = None
        self._status: str | None = None
        self.finished = threading.Event()
        self.snapshot: BookSnapshot | None = None

    def __call__(self, snapshot: BookSnapshot) -> None:
        with self._lock:
            self.snapshot = snapshot
            record = snapshot.record

            if record.status != self._status:
                self._status = record.status
                tqdm.write(f"[{record.id[:8]}] {_STAGE_LABELS.get(record.status, record.status)}...")

            done = sum(1 for key in PROGRESS_KEYS if record.progress.get(key) == ITEM_COMPLETE)
            self._stage_bar.update(done - self._stage_bar.n)

            if snapshot.pages:
                if self._page_bar is None:
                    self._page_bar = tqdm(total=len(snapshot.pages), desc="Illustrated pages", unit="page")
                illustrated = sum(1 for page in snapshot.pages if page.image_status == ITEM_COMPLETE)
                self._page_bar.update(illustrated - self._page_bar.n)

            if record.is_terminal:
                self.finished.set()

    def close(self) -> None:
        with self._lock:
            if self._page_bar is not None:
                self._page_bar.close()
                self._page_bar = None
            self._stage_bar.close()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the full KidBook generation pipeline.")
    parser.add_argument(
        "--inputs",
        required=True,
        help="Path to the book inputs YAML/JSON file.",
    )
    parser.add_argument(
        "--owner",
        default="local-user",
        help="Owner id the book is created for (used by the daily limit).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional settings YAML file; KIDBOOK_* environment variables still apply.",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite database path for book records (defaults to the configured path).",
    )
    parser.add_argument(
        "--storage-dir",
        default=None,
        help="Directory where images and the PDF are written.",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Public URL prefix serving --storage-dir; file:// URIs are used otherwise.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of stage worker threads.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up waiting after this many seconds (default: wait until the book finishes or the workers go idle).",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    return parser.parse_args()


def load_inputs_mapping(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError("Unsupported inputs file format. Use YAML or JSON.")

    if not isinstance(data, Dict):
        raise ValueError("Inputs file must deserialize to a mapping.")
    return data


def load_settings(args: argparse.Namespace) -> PipelineSettings:
    settings = PipelineSettings.from_file(args.config) if args.config else PipelineSettings.from_env()
    overrides: dict[str, Any] = {}
    if args.db:
        overrides["database_path"] = args.db
    if args.storage_dir:
        overrides["storage_root"] = args.storage_dir
    if args.base_url:
        overrides["public_base_url"] = args.base_url
    if args.workers:
        overrides["workers"] = args.workers
    return dataclasses.replace(settings, **overrides)


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = load_settings(args)
    inputs_mapping = load_inputs_mapping(Path(args.inputs))

    database_path = Path(settings.database_path).expanduser()
    database_path.parent.mkdir(parents=True, exist_ok=True)
    repository = SqliteBookRepository(database_path)
    artifact_store = LocalArtifactStore(
        settings.storage_root,
        base_url=settings.public_base_url,
        namespace=settings.namespace,
    )
    task_queue = InMemoryTaskQueue()

    orchestrator = PipelineOrchestrator(
        repository=repository,
        text_generator=BookPlanGenerator(model=settings.story_model),
        image_generator=ReplicateImageGenerator(
            model_identifier=settings.image_model,
            poll_interval=settings.poll_interval,
            max_polls=settings.max_polls,
        ),
        artifact_store=artifact_store,
        document_assembler=StorybookPDFBuilder(request_timeout=settings.request_timeout),
        task_queue=task_queue,
        namespace=settings.namespace,
        retry_policy=RetryPolicy(attempts=settings.item_attempts, backoff=settings.item_backoff),
        fetch=functools.partial(download, timeout=settings.request_timeout),
    )
    service = BookCreationService(
        repository,
        task_queue,
        limiter=DailyBookLimiter(repository, limit=settings.daily_limit),
        namespace=settings.namespace,
    )

    try:
        record = service.create_book(args.owner, inputs_mapping)
    except DailyLimitReached as exc:
        tqdm.write(str(exc))
        return 2
    except ValueError as exc:
        tqdm.write(f"Invalid book inputs: {exc}")
        return 2

    tqdm.write(f"Created book {record.id}: {record.title}")
    tracker = ProgressTracker()
    unsubscribe = repository.subscribe(record.id, tracker)
    try:
        with StageWorkerPool(task_queue, orchestrator, workers=settings.workers) as pool:
            waited = wait_for_book(repository, record.id, pool, timeout=args.timeout, wake=tracker.finished)
    finally:
        unsubscribe()
        tracker.close()
        final = repository.get(record.id)
        repository.close()

    if waited is not None and not waited.is_terminal:
        tqdm.write(f"Stopped waiting for book {record.id}; it is still {waited.status}.")
        return 1
    if final is None or final.status != STATUS_COMPLETE:
        stage = final.error_stage if final else "unknown"
        message = final.error_message if final else "record disappeared"
        tqdm.write(f"Book {record.id} failed during {stage}: {message}")
        return 1

    tqdm.write(f"Book ready: {final.document_url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
