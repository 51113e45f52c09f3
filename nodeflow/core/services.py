"""
External service adapters
The single handle executors use for side effects (AI, mail, chat, HTTP).

The engine never interprets the handle beyond calling these methods; tests
inject in-memory fakes implementing the same surface.
"""
from typing import Protocol, Dict, Any, List, Optional

import requests

from .config import Config
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ServiceError(Exception):
    """
    Failure reported by an adapter method

    Attributes:
        transient: True if retrying may succeed (timeouts, 5xx, rate limits);
                   False for rejections that will fail again (4xx, bad input)
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.message = message
        self.transient = transient


class ServicesProtocol(Protocol):
    """Adapter interface consumed by ai-* and automation-* executors (methods may be async)"""

    def process_text(self, input: str, model: str, max_tokens: int, temperature: float) -> str:
        ...

    def analyze_image(self, data: bytes, provider: str, features: List[str]) -> Dict[str, Any]:
        ...

    def translate(self, text: str, target_language: str, provider: str) -> str:
        ...

    def sentiment(self, text: str, provider: str) -> Dict[str, Any]:
        ...

    def transcribe(self, data: bytes, language: str, provider: str) -> str:
        ...

    def send_email(self, to: str, subject: str, body: str, smtp: str, port: int, ssl: bool) -> bool:
        ...

    def send_slack(self, channel: str, message: str, bot_token: str, username: str) -> str:
        ...

    def http_post(self, url: str, method: str, body: Any, timeout: Optional[float] = None) -> Dict[str, Any]:
        ...


class SimulatedServices:
    """
    Offline adapter returning deterministic placeholder results

    Mirrors what the provider adapters answer when no credentials are
    configured, so workflows can be dry-run from the CLI without network access.
    """

    def process_text(self, input: str, model: str, max_tokens: int, temperature: float) -> str:
        return f"AI processing simulated for: {input}"

    def analyze_image(self, data: bytes, provider: str, features: List[str]) -> Dict[str, Any]:
        return {"simulated": True, "provider": provider, "features": list(features), "bytes": len(data or b"")}

    def translate(self, text: str, target_language: str, provider: str) -> str:
        return f"Translation simulated: '{text}' to {target_language}"

    def sentiment(self, text: str, provider: str) -> Dict[str, Any]:
        return {"simulated": True, "provider": provider, "sentiment": "neutral", "score": 0.5}

    def transcribe(self, data: bytes, language: str, provider: str) -> str:
        return "Audio transcription simulated"

    def send_email(self, to: str, subject: str, body: str, smtp: str, port: int, ssl: bool) -> bool:
        logger.info(f"Simulated email to {to} via {smtp}:{port}")
        return True

    def send_slack(self, channel: str, message: str, bot_token: str, username: str) -> str:
        logger.info(f"Simulated Slack message to {channel}")
        return f"simulated-{channel}"

    def http_post(self, url: str, method: str, body: Any, timeout: Optional[float] = None) -> Dict[str, Any]:
        return {"simulated": True, "url": url, "method": method}


class HttpServices(SimulatedServices):
    """
    Adapter that performs real HTTP calls for webhook nodes (Zapier, Power Automate)

    Connection problems, timeouts, 429 and 5xx responses are reported as
    transient; other 4xx responses are rejections.
    """

    def __init__(self, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.timeout = timeout if timeout is not None else Config.HTTP_TIMEOUT
        self.session = session or requests.Session()

    def http_post(self, url: str, method: str, body: Any, timeout: Optional[float] = None) -> Dict[str, Any]:
        if not url:
            raise ServiceError("webhook URL is not configured", transient=False)
        # The caller passes the time left before its deadline
        timeout = self.timeout if timeout is None else max(min(self.timeout, timeout), 0.001)

        try:
            response = self.session.request(method.upper(), url, json=body, timeout=timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ServiceError(f"{method} {url} failed: {e}", transient=True)
        except requests.RequestException as e:
            raise ServiceError(f"{method} {url} failed: {e}", transient=False)

        if response.status_code == 429 or response.status_code >= 500:
            raise ServiceError(f"{method} {url} returned {response.status_code}", transient=True)
        if response.status_code >= 400:
            raise ServiceError(f"{method} {url} returned {response.status_code}", transient=False)

        try:
            payload = response.json()
        except ValueError:
            payload = {"text": response.text}
        if not isinstance(payload, dict):
            payload = {"data": payload}
        payload.setdefault("statusCode", response.status_code)
        return payload
