from __future__ import annotations

from typing import Any

import requests


class IndexerClient:
    def __init__(self, url: str, token: str = "", timeout: int = 10):
        self.url = url
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["X-INDEXER-TOKEN"] = self.token
        return headers

    def publish(self, payload: dict[str, Any]) -> requests.Response:
        response = requests.post(
            self.url,
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response
