"""
Integration with Replicate for storybook image generation.

Images are produced as Replicate predictions: ``submit`` creates one,
``poll`` reads its state, and ``generate`` polls on a fixed interval until the
prediction is terminal or the poll budget runs out.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterable as IterableABC
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Literal, Protocol
from urllib.parse import unquote, urlparse

import replicate

from kidbook.common.errors import GeneratorError

from .prompting import StorybookPrompt

logger = logging.getLogger(__name__)

PollStatus = Literal["running", "succeeded", "failed"]

DEFAULT_MODEL = "black-forest-labs/flux-kontext-dev"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    output_url: str | None = None
    error: str | None = None


class ImageGenerator(Protocol):
    @property
    def supports_reference_image(self) -> bool:
        ...

    def submit(self, prompt: StorybookPrompt, reference_image: str | None = None) -> str:
        ...

    def poll(self, job_id: str) -> PollResult:
        ...

    def generate(self, prompt: StorybookPrompt, reference_image: str | None = None) -> str:
        ...


def _build_flux_kontext_dev_input(
    *,
    prompt: StorybookPrompt,
    image_input: str | BinaryIO | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt.text,
        "aspect_ratio": "1:1",
        "output_format": "webp",
        "output_quality": 90,
    }
    if image_input is not None:
        payload["input_image"] = image_input
    return payload


def _build_flux_kontext_pro_input(
    *,
    prompt: StorybookPrompt,
    image_input: str | BinaryIO | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt.text,
        "output_format": "png",
        "safety_tolerance": 2,
        "prompt_upsampling": True,
        "aspect_ratio": "1:1",
    }
    if image_input is not None:
        payload["input_image"] = image_input
    return payload


def _build_flux_text_only_input(
    *,
    prompt: StorybookPrompt,
    image_input: str | BinaryIO | None,
) -> dict[str, Any]:
    return {
        "prompt": prompt.text,
        "aspect_ratio": "1:1",
        "num_outputs": 1,
        "output_format": "webp",
        "output_quality": 90,
    }


_MODEL_INPUT_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "black-forest-labs/flux-kontext-dev": _build_flux_kontext_dev_input,
    "black-forest-labs/flux-kontext-pro": _build_flux_kontext_pro_input,
    "black-forest-labs/flux-schnell": _build_flux_text_only_input,
    "black-forest-labs/flux-2-pro": _build_flux_text_only_input,
}

_REFERENCE_CAPABLE_MODELS = {
    "black-forest-labs/flux-kontext-dev",
    "black-forest-labs/flux-kontext-pro",
}


def _base_identifier(model_identifier: str) -> str:
    return model_identifier.strip().lower().split(":", maxsplit=1)[0]


def _resolve_builder(model_identifier: str) -> Callable[..., dict[str, Any]]:
    builder = _MODEL_INPUT_BUILDERS.get(_base_identifier(model_identifier))
    if builder is None:
        supported_models = ", ".join(sorted(_MODEL_INPUT_BUILDERS))
        raise ValueError(
            "Model identifier "
            f"'{model_identifier}' is not configured with a default input payload. "
            f"Supported models: {supported_models}."
        )
    return builder


class ReplicateImageGenerator:
    """
    Wrapper around the Replicate predictions API.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    model_identifier:
        ``owner/model`` or ``owner/model:version``. Falls back to ``REPLICATE_MODEL``
        and then to FLUX Kontext Dev.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    poll_interval / max_polls:
        Fixed delay between polls and the maximum number of polls before giving up.
    sleep:
        Sleep function used between polls; injectable for tests.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        model_identifier: str | None = None,
        client: replicate.Client | None = None,
        poll_interval: float = 2.0,
        max_polls: int = 90,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN or pass api_token."
            )

        self._model_identifier = (
            model_identifier or os.getenv("REPLICATE_MODEL") or DEFAULT_MODEL
        )
        self._input_builder = _resolve_builder(self._model_identifier)

        if max_polls < 1:
            raise ValueError("max_polls must be at least 1.")

        self._client = client or replicate.Client(api_token=self._api_token)
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._sleep = sleep

    @property
    def model_identifier(self) -> str:
        """Return the model identifier currently used."""
        return self._model_identifier

    @property
    def supports_reference_image(self) -> bool:
        return _base_identifier(self._model_identifier) in _REFERENCE_CAPABLE_MODELS

    def submit(self, prompt: StorybookPrompt, reference_image: str | None = None) -> str:
        """
        Create a prediction and return its id as the job handle.
        """
        if reference_image and not self.supports_reference_image:
            logger.debug(
                "Model %s takes no reference image; ignoring %s",
                self._model_identifier,
                reference_image,
            )
            reference_image = None

        with ExitStack() as stack:
            image_input = (
                _prepare_image_input(reference_image, stack=stack)
                if reference_image
                else None
            )
            payload = self._input_builder(prompt=prompt, image_input=image_input)

            try:
                prediction = self._create_prediction(payload)
            except Exception as exc:
                raise GeneratorError(f"Failed to create prediction: {exc}") from exc

        logger.info("Prediction %s created (status %s)", prediction.id, prediction.status)
        return str(prediction.id)

    def _create_prediction(self, payload: dict[str, Any]) -> Any:
        if ":" in self._model_identifier:
            version = self._model_identifier.split(":", maxsplit=1)[1]
            return self._client.predictions.create(version=version, input=payload)
        return self._client.predictions.create(model=self._model_identifier, input=payload)

    def poll(self, job_id: str) -> PollResult:
        try:
            prediction = self._client.predictions.get(job_id)
        except Exception as exc:
            raise GeneratorError(f"Failed to poll prediction: {exc}", job_id=job_id) from exc

        status = str(prediction.status)
        if status == "succeeded":
            urls = normalize_image_outputs(prediction.output)
            if not urls:
                raise GeneratorError("Prediction succeeded without an image URL", job_id=job_id)
            return PollResult(status="succeeded", output_url=urls[0])
        if status in {"failed", "canceled"}:
            error = getattr(prediction, "error", None) or status
            return PollResult(status="failed", error=str(error))
        return PollResult(status="running")

    def generate(self, prompt: StorybookPrompt, reference_image: str | None = None) -> str:
        """
        Submit a prediction and poll until it succeeds, fails or exhausts ``max_polls``.
        """
        job_id = self.submit(prompt, reference_image)

        for attempt in range(1, self._max_polls + 1):
            result = self.poll(job_id)
            if result.status == "succeeded" and result.output_url:
                return result.output_url
            if result.status == "failed":
                raise GeneratorError(
                    f"Image generation failed: {result.error or 'unknown error'}",
                    job_id=job_id,
                )
            logger.debug("Prediction %s still running (poll %d)", job_id, attempt)
            self._sleep(self._poll_interval)

        self._cancel(job_id)
        raise GeneratorError(
            f"Image generation did not finish after {self._max_polls} polls",
            job_id=job_id,
        )

    def _cancel(self, job_id: str) -> None:
        try:
            self._client.predictions.cancel(job_id)
        except Exception as exc:
            logger.warning("Could not cancel stuck prediction %s: %s", job_id, exc)


def _prepare_image_input(
    input_image: str | Path,
    *,
    stack: ExitStack,
) -> str | BinaryIO:
    """
    Normalize the reference image so Replicate can consume it, keeping files open via ExitStack.
    """
    input_candidate = str(input_image)
    if input_candidate.lower().startswith(("http://", "https://", "data:")):
        return input_candidate

    if input_candidate.lower().startswith("file://"):
        input_path = Path(unquote(urlparse(input_candidate).path))
    else:
        input_path = Path(input_candidate).expanduser()

    if not input_path.exists():
        raise GeneratorError(f"Reference image not found at '{input_path}'.")

    return stack.enter_context(input_path.open("rb"))


def normalize_image_outputs(raw: Any) -> list[str]:
    """
    Normalize the image outputs returned by Replicate into a list of URL strings.
    """

    if raw is None:
        return []

    if isinstance(raw, str):
        return [raw]

    if isinstance(raw, bytes):
        return [raw.decode("utf-8", errors="ignore")]

    url = getattr(raw, "url", None)
    if isinstance(url, str):
        return [url]

    if isinstance(raw, dict):
        value = raw.get("url")
        return [str(value)] if value else []

    if isinstance(raw, IterableABC):
        collected = list(raw)
        if not collected:
            return []

        if all(isinstance(item, str) and len(item) == 1 for item in collected):
            return ["".join(collected)]

        normalized: list[str] = []
        for item in collected:
            if item is not None:
                normalized.extend(normalize_image_outputs(item))
        return normalized

    return [str(raw)]
