from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4

from studio_ledger.economy.credits.types import GenerationType, PlanTier


class GenerationFailedError(Exception):
    pass


@dataclass(slots=True)
class GenerationRequest:
    user_id: str
    plan: PlanTier
    generation_type: GenerationType
    count: int
    prompt: str = ""
    settings: dict[str, object] = field(default_factory=dict)
    watermark: bool = False


@dataclass(slots=True)
class GenerationOutput:
    result_urls: list[str]


class GenerationWorker(Protocol):
    async def generate(self, request: GenerationRequest) -> GenerationOutput: ...


class PlaceholderGenerationWorker:
    """Returns storage URLs without rendering anything. Stands in for the model pipeline."""

    def __init__(self, *, result_base_url: str) -> None:
        self._result_base_url = result_base_url.rstrip("/")

    async def generate(self, request: GenerationRequest) -> GenerationOutput:
        extension = "mp4" if request.generation_type is GenerationType.VIDEO else "png"
        batch = uuid4().hex
        suffix = "-wm" if request.watermark else ""
        prefix = f"{self._result_base_url}/{request.user_id}/{request.generation_type.value}"
        return GenerationOutput(
            result_urls=[f"{prefix}/{batch}-{index}{suffix}.{extension}" for index in range(request.count)]
        )
