from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from typing import Any, Protocol

from triage_core.models import ModelCompletion
from triage_core.prompts import build_image_messages

from .object_fetch import FetchedObject, object_name

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".bmp")
IMAGE_HINT = "Analyse cette image médicale et décris les éléments visuels pertinents pour le diagnostic."


class Downloader(Protocol):
    async def download(self, ref: str) -> FetchedObject: ...


class CompletionModel(Protocol):
    async def complete(self, messages: list[dict[str, Any]], **kwargs: Any) -> ModelCompletion: ...


def is_image_ref(ref: str) -> bool:
    name = object_name(ref).lower()
    if name.endswith(IMAGE_EXTENSIONS):
        return True
    # Extension-less storage keys are assumed to be images.
    return "." not in name


def guess_image_mime(ref: str, declared: str | None = None) -> str:
    declared = (declared or "").split(";", 1)[0].strip().lower()
    if declared.startswith("image/"):
        return declared
    guessed, _ = mimetypes.guess_type(object_name(ref))
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


def image_part(fetched: FetchedObject, ref: str) -> dict[str, Any]:
    encoded = base64.b64encode(fetched.content).decode("ascii")
    mime = guess_image_mime(ref, fetched.content_type)
    return {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}}



class ImageDescriber:
    def __init__(self, model: CompletionModel, fetcher: Downloader) -> None:
        self._model = model
        self._fetcher = fetcher

    async def _part(self, ref: str) -> dict[str, Any]:
        fetched = await self._fetcher.download(ref)
        return image_part(fetched, ref)

    async def image_parts(self, refs: list[str]) -> list[dict[str, Any]]:
        images = [ref for ref in refs if is_image_ref(ref)]
        if not images:
            return []
        results = await asyncio.gather(*(self._part(ref) for ref in images), return_exceptions=True)
        parts: list[dict[str, Any]] = []
        for ref, result in zip(images, results):
            if isinstance(result, BaseException):
                logger.warning("image %s skipped: %s", object_name(ref), result)
                continue
            parts.append(result)
        return parts

    async def describe(self, part: dict[str, Any]) -> str:
        completion = await self._model.complete(
            build_image_messages(part, IMAGE_HINT),
            purpose="vision",
            max_tokens=500,
            temperature=0.2,
        )
        return completion.text.strip() or "Image analysée."

    async def describe_parts(self, parts: list[dict[str, Any]]) -> list[str]:
        """Describe images that were already downloaded, one model call each."""

        async def _one(index: int, part: dict[str, Any]) -> str:
            try:
                return f"Image {index}:\n{await self.describe(part)}"
            except Exception as exc:
                logger.warning("image %d description failed: %s", index, exc)
                return f"Image {index}: Erreur lors de l'analyse - {exc}"

        return list(await asyncio.gather(*(_one(index, part) for index, part in enumerate(parts, start=1))))
