from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Optional

import replicate
import requests

from ..config import DepthSourceConfig
from ..errors import ConfigError, DepthGenerationError
from ..events import ProgressCallback
from ..imaging import to_data_uri, validate_upload

logger = logging.getLogger("depthcut.clients.replicate")


class TokenStore:
    """
    Holds the Replicate API token for the depth client and nothing else.

    Resolution order: explicit value, then REPLICATE_API_TOKEN.
    """

    ENV_VAR = "REPLICATE_API_TOKEN"

    def __init__(self, token: Optional[str] = None):
        self._token = token.strip() if token else None

    def get(self) -> Optional[str]:
        if self._token:
            return self._token
        env = os.getenv(self.ENV_VAR, "").strip()
        return env or None

    def set(self, token: str) -> None:
        token = (token or "").strip()
        if not token:
            raise ConfigError("API token cannot be empty")
        self._token = token

    def clear(self) -> None:
        self._token = None

    def require(self) -> str:
        token = self.get()
        if not token:
            raise ConfigError(f"Missing Replicate API token; set {self.ENV_VAR} or pass a token")
        return token

    @staticmethod
    def mask(token: str) -> str:
        if len(token) <= 8:
            return "*" * len(token)
        return f"{token[:4]}…{token[-4:]}"


def _version_id(model: str) -> str:
    # "owner/name:version" -> "version"
    return model.split(":", 1)[1] if ":" in model else model


def _is_file_output(obj: Any) -> bool:
    return hasattr(obj, "read") and callable(getattr(obj, "read"))


def pick_depth_output(output: Any) -> Any:
    """Find the depth image in a prediction output: a URL or a Replicate FileOutput."""
    found: Any = None
    if isinstance(output, str) or _is_file_output(output):
        found = output
    elif isinstance(output, dict):
        found = output.get("depth") or output.get("grey_depth")
    elif isinstance(output, (list, tuple)) and output:
        found = output[0]
    if _is_file_output(found) or (isinstance(found, str) and found):
        return found
    raise DepthGenerationError(f"Depth model returned an unexpected output: {type(output).__name__}")


class ReplicateDepthClient:
    """
    Obtain a depth map for an image from Depth Anything V2 on Replicate.

    The prediction is created, polled until it reaches a terminal status, and
    the grayscale depth image is downloaded and returned as encoded bytes.
    """

    def __init__(
        self,
        config: Optional[DepthSourceConfig] = None,
        *,
        tokens: Optional[TokenStore] = None,
        client: Optional[Any] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or DepthSourceConfig.from_env()
        self.tokens = tokens or TokenStore()
        self._client = client
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = replicate.Client(api_token=self.tokens.require())
        return self._client

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def close(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None

    def __enter__(self) -> "ReplicateDepthClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def validate_token(self) -> bool:
        """Probe the account endpoint with the stored token."""
        token = self.tokens.get()
        if not token:
            return False
        try:
            r = self.session.get(
                f"{self.config.base_url}/account",
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.config.request_timeout_s,
            )
        except requests.RequestException as exc:
            logger.warning("token validation failed: %s", exc)
            return False
        return r.ok

    def generate_depth(self, image_bytes: bytes, *, on_progress: Optional[ProgressCallback] = None) -> bytes:
        def report(percent: float, message: str) -> None:
            if on_progress is not None:
                on_progress(percent, message)

        mime = validate_upload(image_bytes, label="image", max_bytes=self.config.max_upload_bytes)
        logger.info("depth request model=%s bytes=%d", self.config.depth_model, len(image_bytes))

        report(10, "Encoding image...")
        data_uri = to_data_uri(image_bytes, mime)

        report(20, "Creating depth prediction...")
        try:
            prediction = self.client.predictions.create(
                version=_version_id(self.config.depth_model),
                input={"image": data_uri, **self.config.depth_params},
            )
        except ConfigError:
            raise
        except Exception as exc:
            raise DepthGenerationError(f"Depth generation failed: {exc}") from exc
        logger.info("prediction %s created", prediction.id)

        report(30, "Waiting for depth model...")
        output = self._poll(prediction.id, report)

        report(90, "Downloading depth map...")
        depth = pick_depth_output(output)
        data = depth.read() if _is_file_output(depth) else self._download(depth)

        report(100, "Depth map ready")
        return data

    def _poll(self, prediction_id: str, report: Callable[[float, str], None]) -> Any:
        attempts = self.config.max_poll_attempts
        for attempt in range(attempts):
            try:
                prediction = self.client.predictions.get(prediction_id)
            except Exception as exc:
                raise DepthGenerationError(f"Fetching prediction {prediction_id} failed: {exc}") from exc

            status = getattr(prediction, "status", None)
            if status == "succeeded":
                logger.info("prediction %s succeeded", prediction_id)
                return prediction.output
            if status == "failed":
                raise DepthGenerationError(getattr(prediction, "error", None) or "Depth model failed")
            if status == "canceled":
                raise DepthGenerationError("Depth prediction was canceled")

            report(
                min(30 + (attempt / attempts) * 50, 80),
                f"Depth model running... ({attempt + 1}/{attempts})",
            )
            self._sleep(self.config.poll_interval_s)

        raise DepthGenerationError(
            f"Depth prediction timed out after {attempts * self.config.poll_interval_s:.0f}s; try again later"
        )

    def _download(self, url: str) -> bytes:
        logger.info("downloading depth map %s", url)
        try:
            r = self.session.get(url, timeout=self.config.request_timeout_s)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise DepthGenerationError(f"Depth map download failed: {exc}") from exc
        return r.content
