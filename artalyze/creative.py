"""
Creative pipeline: turns a staged human image into a schedulable pair.

caption (Replicate BLIP-2) -> remix into a new prompt (OpenAI chat)
-> generate the AI image (OpenAI images) -> place on the next day with room.

Every network step carries its own timeout. A generator answering ``None``
means quota or rate limit: the pair is skipped, not failed. One bad image
never stops the rest of a batch.
"""
from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from openai import APIStatusError, OpenAI, OpenAIError, RateLimitError
from sqlmodel import Session

from . import models, scheduler
from .errors import GenerationFailed
from .logging_utils import get_logger

logger = get_logger("artalyze.creative")

REPLICATE_URL = "https://api.replicate.com/v1/predictions"
# salesforce/blip-2
DEFAULT_CAPTION_VERSION = "4b32258c42e9efd4288bb9910bc532a69727f9acd26aa08e175713a0a857a608"

_QUOTA_CODES = ("insufficient_quota", "billing_hard_limit_reached", "rate_limit_exceeded")

REMIX_SYSTEM_PROMPT = (
    "You write prompts for an image model. The image will sit next to a human-made "
    "piece in a guessing game, so it must look plausibly human-made: name the medium, "
    "texture and lighting, allow small imperfections, keep it grounded. "
    "Reply with the prompt only, under 100 characters."
)


def step_timeout() -> float:
    return float(os.getenv("CREATIVE_STEP_TIMEOUT", "60"))


class ReplicateCaptioner:
    def __init__(self, token: Optional[str] = None, version: Optional[str] = None,
                 timeout: Optional[float] = None, poll_interval: float = 1.0):
        self.token = token or os.getenv("REPLICATE_API_TOKEN", "")
        self.version = version or os.getenv("CAPTION_MODEL_VERSION", DEFAULT_CAPTION_VERSION)
        self.timeout = timeout or step_timeout()
        self.poll_interval = poll_interval

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    def caption(self, image_url: str) -> str:
        if not self.token:
            raise GenerationFailed("REPLICATE_API_TOKEN is not configured")
        deadline = time.monotonic() + self.timeout
        try:
            r = requests.post(
                REPLICATE_URL,
                headers=self._headers(),
                json={
                    "version": self.version,
                    "input": {
                        "image": image_url,
                        "task": "image_to_text",
                        "use_nucleus_sampling": True,
                        "temperature": 1,
                        "top_p": 0.9,
                    },
                },
                timeout=self.timeout,
            )
            r.raise_for_status()
            prediction = r.json()
            while prediction.get("status") not in ("succeeded", "failed", "canceled"):
                if time.monotonic() > deadline:
                    raise GenerationFailed(f"captioning timed out after {self.timeout}s")
                time.sleep(self.poll_interval)
                poll_url = (prediction.get("urls") or {}).get("get") or f"{REPLICATE_URL}/{prediction['id']}"
                r = requests.get(poll_url, headers=self._headers(), timeout=self.timeout)
                r.raise_for_status()
                prediction = r.json()
        except requests.RequestException as e:
            raise GenerationFailed(f"captioning request failed: {e}")

        if prediction.get("status") != "succeeded":
            raise GenerationFailed(f"captioning {prediction.get('status')}: {prediction.get('error')}")
        output = prediction.get("output")
        text = " ".join(output) if isinstance(output, list) else str(output or "")
        text = re.sub(r"\s+", " ", text).strip()
        if not text:
            raise GenerationFailed("captioning returned no text")
        return text


class OpenAIRemixer:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.timeout = timeout or step_timeout()
        self._client: Optional[OpenAI] = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=1)
        return self._client

    def remix(self, caption: str, metadata: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        if not self.api_key:
            raise GenerationFailed("OPENAI_API_KEY is not configured")
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                temperature=0.7,
                max_tokens=100,
                messages=[
                    {"role": "system", "content": REMIX_SYSTEM_PROMPT},
                    {"role": "user", "content": (
                        f'Original artwork: "{caption}"\n'
                        "Describe a different subject of the same kind, in the same style and medium."
                    )},
                ],
            )
        except OpenAIError as e:
            raise GenerationFailed(f"prompt remix failed: {e}")
        prompt = (completion.choices[0].message.content or "").strip().strip('"')
        if not prompt:
            raise GenerationFailed("prompt remix returned no text")
        return prompt, {**metadata, "generation_prompt": prompt}


def _closest_size(dimensions: Optional[Tuple[Optional[int], Optional[int]]]) -> str:
    width, height = dimensions or (None, None)
    if not width or not height:
        return "1024x1024"
    ratio = width / height
    if ratio > 1.3:
        return "1792x1024"
    if ratio < 0.77:
        return "1024x1792"
    return "1024x1024"


class OpenAIImageGenerator:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.model = model or os.getenv("OPENAI_IMAGE_MODEL", "dall-e-3")
        self.timeout = timeout or step_timeout()
        self._client: Optional[OpenAI] = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=1)
        return self._client

    def generate_image(self, prompt: str, dimensions, metadata: Dict[str, Any]) -> Optional[str]:
        """Return the generated image URL, or None when quota/rate limits say "not now"."""
        if not self.api_key:
            raise GenerationFailed("OPENAI_API_KEY is not configured")
        try:
            result = self.client.images.generate(
                model=self.model,
                prompt=prompt,
                size=_closest_size(dimensions),
                n=1,
            )
        except RateLimitError as e:
            logger.warning("image_generation_rate_limited", extra={"kind": e.code})
            return None
        except APIStatusError as e:
            if e.code in _QUOTA_CODES:
                logger.warning("image_generation_quota", extra={"kind": e.code})
                return None
            raise GenerationFailed(f"image generation failed with HTTP {e.status_code}")
        except OpenAIError as e:
            raise GenerationFailed(f"image generation request failed: {e}")

        url = result.data[0].url if result.data else None
        if not url:
            raise GenerationFailed("image generation returned no image")
        metadata["model"] = self.model
        return url


@dataclass
class BatchItem:
    human_image_url: str
    outcome: str  # scheduled | skipped | failed
    image_id: Optional[int] = None
    day: Optional[str] = None
    error: Optional[str] = None

    def as_event(self) -> dict:
        return {"type": "batch_item", **asdict(self)}


class CreativePipeline:
    def __init__(self, captioner, remixer, generator):
        self.captioner = captioner
        self.remixer = remixer
        self.generator = generator

    def build_pair(self, image: models.PendingImage) -> Optional[models.NewPair]:
        caption = self.captioner.caption(image.url)
        meta: Dict[str, Any] = {
            "description": caption,
            "source_public_id": image.public_id,
            "width": image.width,
            "height": image.height,
        }
        prompt, meta = self.remixer.remix(caption, meta)
        ai_url = self.generator.generate_image(prompt, (image.width, image.height), meta)
        if ai_url is None:
            return None
        meta["generated_at"] = datetime.now(timezone.utc)
        return models.NewPair(
            human_image_url=image.url,
            ai_image_url=ai_url,
            metadata=models.PairMetadata.model_validate(meta),
        )

    def process(self, session: Session, image: models.PendingImage) -> BatchItem:
        item = BatchItem(human_image_url=image.url, outcome="failed", image_id=image.id)
        try:
            pair = self.build_pair(image)
            if pair is None:
                item.outcome = "skipped"
                item.error = "generation quota reached, try again later"
            else:
                # the image is marked used in the same commit as the pair
                item.day, _ = scheduler.schedule_next_available(session, pair, image_id=image.id)
                item.outcome = "scheduled"
        except Exception as e:
            # one bad image must not sink the batch
            session.rollback()
            item.error = str(e)
            logger.exception("batch_item_failed", extra={"image_id": item.image_id, "error": str(e)})
        logger.info("batch_item", extra={"image_id": item.image_id, "outcome": item.outcome, "day": item.day})
        return item

    def run_batch(self, session: Session, images: List[models.PendingImage],
                  on_result: Optional[Callable[[BatchItem], None]] = None) -> List[BatchItem]:
        results = []
        for image in images:
            item = self.process(session, image)
            results.append(item)
            if on_result is not None:
                on_result(item)
        return results


def default_pipeline() -> CreativePipeline:
    return CreativePipeline(ReplicateCaptioner(), OpenAIRemixer(), OpenAIImageGenerator())


def summarize(results: List[BatchItem]) -> dict:
    counts = {"scheduled": 0, "skipped": 0, "failed": 0}
    for item in results:
        counts[item.outcome] = counts.get(item.outcome, 0) + 1
    return {"results": [asdict(i) for i in results], **counts}
