from __future__ import annotations

import io
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest
from PIL import Image

from kidbook.ai_generation import PollResult, StorybookPrompt
from kidbook.pdf_generation import StorybookPDFBuilder
from kidbook.pipeline import InMemoryTaskQueue, PipelineOrchestrator, RetryPolicy
from kidbook.records import BookRecord, InMemoryBookRepository
from kidbook.records.models import STATUS_GENERATING_STORY
from kidbook.storage import InMemoryArtifactStore
from kidbook.story_generation import BookInputs, BookPlan, parse_book_plan

NAMESPACE = "test-namespace"
CREATED_AT = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def png_bytes(color: str = "orange", size: tuple[int, int] = (16, 12)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def plan_payload(
    characters: Optional[list[dict[str, Any]]] = None,
    *,
    title: str = "Leo and the Moon Map",
) -> dict[str, Any]:
    if characters is None:
        characters = [
            {
                "name": "Leo",
                "description": "A curious six-year-old astronaut.",
                "visualSignature": "small boy, curly brown hair, orange space suit with star patch",
                "role": "protagonist",
            },
            {
                "name": "Pip",
                "description": "A chatty robot sidekick.",
                "visualSignature": "round silver robot, blue antenna, glowing green eyes",
                "role": "supporting",
            },
            {
                "name": "Zorg",
                "description": "A grumpy comet who hides the map.",
                "visualSignature": "purple comet with a frowning face and sparkly tail",
                "role": "antagonist",
            },
        ]
    names = [c["name"] for c in characters]
    pages = [
        {
            "pageNumber": 0,
            "pageText": "Leo and the Moon Map",
            "sceneDescription": "Leo and Pip floating in front of a giant glowing moon",
            "charactersOnPage": names[:2],
        }
    ]
    for number in range(1, 11):
        pages.append(
            {
                "pageNumber": number,
                "pageText": f"Page {number} of the adventure.",
                "sceneDescription": f"Scene {number} on the moon",
                "charactersOnPage": [names[number % len(names)]],
            }
        )
    return {
        "title": title,
        "summary": "Leo finds the lost moon map.",
        "characters": characters,
        "pages": pages,
    }


@pytest.fixture
def book_inputs() -> BookInputs:
    return BookInputs.from_mapping(
        {
            "childName": "Leo",
            "ageRange": "6-8",
            "theme": "space",
            "setting": "the moon",
            "tone": "adventurous",
            "characterCount": 3,
        }
    )


class FakeTextGenerator:
    def __init__(self, payload: Optional[dict[str, Any]] = None, error: Optional[Exception] = None):
        self.payload = payload or plan_payload()
        self.error = error
        self.calls = 0

    def generate(self, inputs: BookInputs) -> BookPlan:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return parse_book_plan(self.payload)


class ScriptedImageGenerator:
    """
    Image generator double: returns a fresh URL per call, or raises what ``fail`` returns.
    """

    def __init__(
        self,
        *,
        fail: Optional[Callable[[StorybookPrompt, int], Optional[Exception]]] = None,
        supports_reference_image: bool = True,
    ) -> None:
        self.fail = fail
        self.calls: list[tuple[str, Optional[str]]] = []
        self._counter = itertools.count(1)
        self._supports_reference_image = supports_reference_image

    @property
    def supports_reference_image(self) -> bool:
        return self._supports_reference_image

    def submit(self, prompt: StorybookPrompt, reference_image: Optional[str] = None) -> str:
        return f"job-{len(self.calls)}"

    def poll(self, job_id: str) -> PollResult:
        return PollResult(status="succeeded", output_url=f"https://images.test/{job_id}.png")

    def generate(self, prompt: StorybookPrompt, reference_image: Optional[str] = None) -> str:
        self.calls.append((prompt.positive, reference_image))
        if self.fail is not None:
            error = self.fail(prompt, len(self.calls))
            if error is not None:
                raise error
        return f"https://images.test/output-{next(self._counter)}.png"


class FakeFetcher:
    def __init__(self, data: Optional[bytes] = None, content_type: str = "image/png") -> None:
        self.data = data or png_bytes()
        self.content_type = content_type
        self.urls: list[str] = []

    def __call__(self, url: str) -> tuple[bytes, str]:
        self.urls.append(url)
        return self.data, self.content_type


class TickingClock:
    """Clock that advances one second per call."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def repository() -> InMemoryBookRepository:
    return InMemoryBookRepository(clock=TickingClock())


@pytest.fixture
def artifact_store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore(namespace=NAMESPACE)


@pytest.fixture
def task_queue() -> InMemoryTaskQueue:
    return InMemoryTaskQueue()


@pytest.fixture
def text_generator() -> FakeTextGenerator:
    return FakeTextGenerator()


@pytest.fixture
def image_generator() -> ScriptedImageGenerator:
    return ScriptedImageGenerator()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_orchestrator(repository, artifact_store, task_queue, text_generator, image_generator, fetcher, sleeps):
    def factory(**overrides: Any) -> PipelineOrchestrator:
        options: dict[str, Any] = dict(
            repository=repository,
            text_generator=text_generator,
            image_generator=image_generator,
            artifact_store=artifact_store,
            document_assembler=StorybookPDFBuilder(page_compression=False),
            task_queue=task_queue,
            namespace=NAMESPACE,
            retry_policy=RetryPolicy(attempts=2, backoff=(0.5,)),
            fetch=fetcher,
            sleep=sleeps.append,
        )
        options.update(overrides)
        return PipelineOrchestrator(**options)

    return factory


@pytest.fixture
def new_book(repository, book_inputs):
    counter = itertools.count(1)

    def factory(*, status: str = STATUS_GENERATING_STORY, namespace: str = NAMESPACE, owner_id: str = "owner-1") -> BookRecord:
        record = BookRecord(
            id=f"book-{next(counter)}",
            owner_id=owner_id,
            inputs=book_inputs,
            namespace=namespace,
            status=status,
            title="A space Story",
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
        return repository.create(record)

    return factory
