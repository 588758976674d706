"""Replicate inference client and artifact helpers.

A prediction is created once (never retried, it is not idempotent) and then
polled at a fixed interval. Polls are reads, so transient poll failures are
retried within the same attempt bound.
"""
import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Tuple

import httpx

from enhancer.core.config import Settings
from enhancer.core.errors import InvalidRequest, NotConfigured, UpstreamUnavailable

log = logging.getLogger("inference")

REPLICATE_API = "https://api.replicate.com/v1"
DEFAULT_TIMEOUT = 30.0
MAX_ARTIFACT_BYTES = 50 * 1024 * 1024


class InferenceTimeout(Exception):
    def __init__(self, prediction_id: str, attempts: int):
        super().__init__(f"prediction {prediction_id} not finished after {attempts} polls")
        self.prediction_id = prediction_id
        self.attempts = attempts


@dataclass(frozen=True)
class InferenceResult:
    prediction_id: str
    output_url: str
    model: str


def decode_data_url(data_url: str) -> Tuple[bytes, str]:
    """Split a `data:<type>;base64,<payload>` URL into bytes and content type."""
    if not data_url or not data_url.startswith("data:") or "," not in data_url:
        raise InvalidRequest("Expected a base64 data URL.")
    header, payload = data_url.split(",", 1)
    meta = header[len("data:"):]
    if not meta.endswith(";base64"):
        raise InvalidRequest("Only base64 data URLs are supported.")
    content_type = meta[: -len(";base64")] or "application/octet-stream"
    if not content_type.startswith("image/"):
        raise InvalidRequest("Only image uploads are supported.")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidRequest("Image data is not valid base64.") from e
    if not data:
        raise InvalidRequest("Image is empty.")
    return data, content_type


def _output_url(output: Any) -> str | None:
    if isinstance(output, str):
        return output
    if isinstance(output, list) and output and isinstance(output[0], str):
        return output[0]
    return None


class ReplicateInference:
    def __init__(
        self,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.token = settings.REPLICATE_API_TOKEN
        self.poll_interval = max(0.0, settings.INFERENCE_POLL_INTERVAL_S)
        self.max_attempts = max(1, settings.INFERENCE_MAX_ATTEMPTS)
        # model selector -> (version, fixed inputs)
        self.models: Dict[str, Tuple[str, Dict[str, Any]]] = {
            "gfpgan": (settings.INFERENCE_MODEL_VERSION, {"version": "v1.4", "scale": 2}),
        }
        self._sleep = sleep
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    def _settled(
        self, prediction: Dict[str, Any], pred_id: str, model: str, polls: int
    ) -> InferenceResult | None:
        """Result of a finished prediction; None while it is still running."""
        status = prediction.get("status")
        if status == "succeeded":
            url = _output_url(prediction.get("output"))
            if not url:
                raise UpstreamUnavailable("inference", "The enhancement service returned no image.")
            log.info("inference.succeeded id=%s polls=%d", pred_id, polls)
            return InferenceResult(pred_id, url, model)
        if status in ("failed", "canceled"):
            log.warning("inference.%s id=%s error=%s", status, pred_id, prediction.get("error"))
            raise UpstreamUnavailable("inference", "Enhancement failed. Please retry.")
        return None

    async def enhance(self, image_url: str, model: str = "gfpgan") -> InferenceResult:
        if model not in self.models:
            raise InvalidRequest(f"Unknown model: {model}")
        if not self.configured:
            raise NotConfigured("Inference is not configured.")
        version, fixed = self.models[model]
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{REPLICATE_API}/predictions",
                    json={"version": version, "input": {"img": image_url, **fixed}},
                    headers=self._headers(),
                )
                resp.raise_for_status()
            except httpx.HTTPError as e:
                log.warning("inference.create failed model=%s err=%s", model, type(e).__name__)
                raise UpstreamUnavailable("inference", "The enhancement service is unavailable. Please retry.") from e
            prediction = resp.json()
            pred_id = prediction.get("id") or ""
            poll_url = (prediction.get("urls") or {}).get("get") or f"{REPLICATE_API}/predictions/{pred_id}"
            log.info("inference.created id=%s model=%s", pred_id, model)

            result = self._settled(prediction, pred_id, model, 0)
            if result is not None:
                return result
            for attempt in range(1, self.max_attempts + 1):
                await self._sleep(self.poll_interval)
                try:
                    resp = await client.get(poll_url, headers=self._headers())
                    resp.raise_for_status()
                    prediction = resp.json()
                except (httpx.HTTPError, ValueError) as e:
                    log.info("inference.poll retry id=%s attempt=%d err=%s", pred_id, attempt, type(e).__name__)
                    continue
                # every poll is checked, the last one included
                result = self._settled(prediction, pred_id, model, attempt)
                if result is not None:
                    return result

            try:
                await client.post(f"{REPLICATE_API}/predictions/{pred_id}/cancel", headers=self._headers())
            except httpx.HTTPError as e:
                log.info("inference.cancel failed id=%s err=%s", pred_id, type(e).__name__)
        log.warning("inference.timeout id=%s attempts=%d", pred_id, self.max_attempts)
        raise InferenceTimeout(pred_id, self.max_attempts)

    async def fetch_artifact(self, url: str) -> Tuple[bytes, str]:
        """Download an inference output. Returns (bytes, content type)."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("inference", "Could not download the enhanced image.") from e
        if len(resp.content) > MAX_ARTIFACT_BYTES:
            raise UpstreamUnavailable("inference", "Enhanced image is too large.", retryable=False)
        content_type = resp.headers.get("content-type", "image/png").split(";", 1)[0]
        return resp.content, content_type
