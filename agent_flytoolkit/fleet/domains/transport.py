"""HTTP transport used by the Fly client.

The client only depends on the ``Transport`` protocol, so tests and other
runtimes can swap in their own implementation.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests

from .errors import TransientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class TransportResponse:
    """Status code plus decoded JSON body (``None`` when empty or not JSON)."""
    status: int
    body: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    def request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        ...


class RequestsTransport:
    """Transport backed by a ``requests.Session``."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        """Lazy-initialize session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                json=json_body,
                params=params,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientError(f"{method} {path} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"{method} {path} connection failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

        body = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                logger.debug(f"{method} {path} returned a non-JSON body (status {response.status_code})")
        return TransportResponse(status=response.status_code, body=body, text=response.text)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
