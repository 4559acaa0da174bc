from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict

import httpx
from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import (
    PredictionCanceledError,
    PredictionConfigError,
    PredictionFailedError,
    PredictionInputError,
    PredictionRequestError,
    PredictionTimeoutError,
)
from app.utils.polling import poll_until

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = ("succeeded", "completed")
FAILED_STATUS = "failed"
CANCELED_STATUS = "canceled"
TERMINAL_STATUSES = SUCCESS_STATUSES + (FAILED_STATUS, CANCELED_STATUS)


class PredictionConfig(BaseModel):
    base_url: str = "https://api.replicate.com/v1"
    api_token: str | None = None
    model_version: str | None = None
    language: str = "en"
    poll_interval: float = 2.0
    max_poll_attempts: int = 60
    timeout_seconds: int = 60

    @classmethod
    def from_settings(cls) -> "PredictionConfig":
        return cls(
            base_url=settings.replicate_api_url,
            api_token=settings.replicate_api_token,
            model_version=settings.kokoro_model_version,
            language=settings.tts_default_language,
            poll_interval=settings.tts_poll_interval_seconds,
            max_poll_attempts=settings.tts_max_poll_attempts,
            timeout_seconds=settings.tts_request_timeout_seconds,
        )


# 从错误响应体中提取可读信息
def _extract_error_message(payload: str) -> str:
    try:
        data = json.loads(payload)
    except Exception:
        return payload.strip()[:300]
    if isinstance(data, dict):
        msg = data.get("detail") or data.get("error") or data.get("title")
        if msg:
            return str(msg)
    return payload.strip()[:300]


def _format_http_error(action: str, exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text or ""
        message = _extract_error_message(body) if body else str(exc)
        if status in (401, 403):
            return f"{action}: token rejected ({status})"
        if status == 429:
            return f"{action}: rate limited"
        return f"{action} failed ({status}): {message}"
    return f"{action} failed: {exc}"


# 取第一个输出地址（output 可能是列表或字符串）
def _first_output_url(output: Any) -> str | None:
    if isinstance(output, str):
        return output.strip() or None
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str) and item.strip():
                return item.strip()
    return None


class PredictionClient:
    """Drives one TTS prediction on a Replicate-compatible API to completion."""

    def __init__(
        self,
        config: PredictionConfig | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or PredictionConfig.from_settings()
        self._client = http_client
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Token {self.config.api_token}"
        return headers

    def _predictions_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/predictions"

    def _request_json(self, client: httpx.Client, method: str, url: str, action: str, **kwargs) -> Dict[str, Any]:
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise PredictionRequestError(_format_http_error(action, exc)) from exc
        except ValueError as exc:
            raise PredictionRequestError(f"{action}: invalid JSON response") from exc
        if not isinstance(data, dict):
            raise PredictionRequestError(f"{action}: unexpected response body")
        return data

    # 创建预测任务
    def create_prediction(
        self, client: httpx.Client, text: str, language: str | None = None
    ) -> Dict[str, Any]:
        payload = {
            "version": self.config.model_version,
            "input": {"text": text, "language": language or self.config.language},
        }
        data = self._request_json(
            client,
            "POST",
            self._predictions_url(),
            "create prediction",
            headers=self._headers(),
            json=payload,
        )
        if data.get("error"):
            raise PredictionRequestError(f"create prediction: {data['error']}")
        if not data.get("id"):
            raise PredictionRequestError("create prediction: response has no id")
        return data

    def get_prediction(self, client: httpx.Client, prediction_id: str) -> Dict[str, Any]:
        return self._request_json(
            client,
            "GET",
            f"{self._predictions_url()}/{prediction_id}",
            "poll prediction",
            headers=self._headers(),
        )

    def download(self, client: httpx.Client, url: str) -> bytes:
        try:
            response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PredictionRequestError(_format_http_error("download audio", exc)) from exc
        return response.content

    def wait_for_output(self, client: httpx.Client, prediction_id: str) -> str:
        """Poll the prediction until it is terminal and return its output URL."""

        def _fetch(attempt: int) -> Dict[str, Any]:
            data = self.get_prediction(client, prediction_id)
            logger.debug(
                "Prediction %s poll %d/%d: %s",
                prediction_id,
                attempt,
                self.config.max_poll_attempts,
                data.get("status"),
            )
            return data

        outcome = poll_until(
            _fetch,
            lambda data: data.get("status") in TERMINAL_STATUSES,
            max_attempts=self.config.max_poll_attempts,
            interval=self.config.poll_interval,
            sleep=self._sleep,
        )
        if not outcome.done or outcome.value is None:
            raise PredictionTimeoutError(outcome.attempts, prediction_id)

        data = outcome.value
        status = data.get("status")
        if status == FAILED_STATUS:
            raise PredictionFailedError(data.get("error"), prediction_id)
        if status == CANCELED_STATUS:
            raise PredictionCanceledError(prediction_id)
        url = _first_output_url(data.get("output"))
        if not url:
            raise PredictionRequestError(f"prediction {prediction_id}: no output from model")
        logger.info("Prediction %s %s after %d polls", prediction_id, status, outcome.attempts)
        return url

    # 文本 -> 音频字节
    def generate(self, text: str, language: str | None = None) -> bytes:
        text = (text or "").strip()
        if not text:
            raise PredictionInputError("cannot generate audio for empty text")
        if not self.config.model_version:
            raise PredictionConfigError("KOKORO_MODEL_VERSION not set")

        logger.info("Starting TTS prediction for text length %d", len(text))
        if self._client is not None:
            return self._generate_with(self._client, text, language)
        with httpx.Client(timeout=self.config.timeout_seconds) as client:
            return self._generate_with(client, text, language)

    def _generate_with(self, client: httpx.Client, text: str, language: str | None) -> bytes:
        prediction = self.create_prediction(client, text, language)
        prediction_id = str(prediction["id"])
        audio_url = self.wait_for_output(client, prediction_id)
        return self.download(client, audio_url)
