from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx

from state.adapters import ChangeCallback, ChangeEvent, ErrorCallback, Unsubscribe


logger = logging.getLogger(__name__)

ENV_DATABASE_URL = "FIREBASE_DATABASE_URL"
ENV_AUTH = "FIREBASE_AUTH"
ENV_PATH = "FIREBASE_PATH"

DEFAULT_PATH = "persist"


class FirebaseError(RuntimeError):
    """Base error for the Firebase Realtime Database adapter."""


class FirebaseApiError(FirebaseError):
    """Database answered with an error status or an unexpected body."""


class FirebaseStorage:
    """
    StorageAdapter over the Firebase Realtime Database REST API.

    Notes
    - Each storage key is a node `{path}/{key}` holding
      `{"data": <blob>, "updated_at": <server timestamp>}`.
    - `auth` is an ID token or database secret, sent as the `auth` query param.
    - `subscribe` opens the REST streaming endpoint (Server-Sent Events) and
      turns `put` / `patch` events into ChangeEvents. A broken stream is
      reported once through `on_error` and not reopened.
    - Failed requests are not retried here; callers decide when to try again.
    """

    def __init__(
        self,
        database_url: str,
        *,
        path: str = DEFAULT_PATH,
        auth: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self._base_url = database_url.rstrip("/")
        self._path = path.strip("/")
        self._auth = auth
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._streams: Dict[int, asyncio.Task] = {}

    @classmethod
    def from_env(cls) -> "FirebaseStorage":
        url = os.environ.get(ENV_DATABASE_URL)
        if not url:
            raise RuntimeError(f"Missing required configuration: {ENV_DATABASE_URL}")
        return cls(
            url,
            path=os.environ.get(ENV_PATH) or DEFAULT_PATH,
            auth=os.environ.get(ENV_AUTH) or None,
        )

    async def close(self) -> None:
        for task in list(self._streams.values()):
            task.cancel()
        self._streams.clear()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "FirebaseStorage":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --------------- StorageAdapter ---------------
    async def read(self, key: str) -> Optional[str]:
        node = await self._request("GET", key)
        return _blob_from_node(node)

    async def write(self, key: str, blob: str) -> None:
        await self._request("PUT", key, json_body={"data": blob, "updated_at": {".sv": "timestamp"}})

    async def delete(self, key: str) -> None:
        await self._request("DELETE", key)

    # --------------- Subscribable ---------------
    def subscribe(
        self,
        key: str,
        callback: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        task = asyncio.create_task(self._stream(key, callback, on_error))
        token = id(task)
        self._streams[token] = task

        def unsubscribe() -> None:
            stream = self._streams.pop(token, None)
            if stream is not None:
                stream.cancel()

        return unsubscribe

    # --------------- Internal ---------------
    def _url(self, key: str) -> str:
        node = f"{self._path}/{key}" if self._path else key
        return f"{self._base_url}/{node}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self._auth} if self._auth else {}

    async def _request(self, method: str, key: str, *, json_body: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self._client.request(method, self._url(key), params=self._params(), json=json_body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise FirebaseError(f"{method} {key!r} failed: {exc}") from exc
        if resp.status_code != 200:
            raise FirebaseApiError(f"HTTP {resp.status_code} from Firebase: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise FirebaseApiError("Failed to parse JSON from Firebase") from exc

    async def _stream(
        self,
        key: str,
        callback: ChangeCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        try:
            async with self._client.stream(
                "GET",
                self._url(key),
                params=self._params(),
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(None),
            ) as resp:
                if resp.status_code != 200:
                    raise FirebaseApiError(f"HTTP {resp.status_code} opening Firebase stream")
                async for event, data in _iter_sse(resp.aiter_lines()):
                    if event in ("cancel", "auth_revoked"):
                        raise FirebaseApiError(f"Firebase stream closed by server: {event}")
                    if event not in ("put", "patch"):
                        continue  # keep-alive
                    change = _change_from_event(key, event, data)
                    if change is not None:
                        callback(change)
        except asyncio.CancelledError:
            raise
        except (FirebaseError, httpx.HTTPError, ValueError) as exc:
            err = exc if isinstance(exc, FirebaseError) else FirebaseError(f"stream for {key!r} failed: {exc}")
            logger.error("Firebase stream for %r ended: %s", key, err)
            if on_error is not None:
                on_error(err)


async def _iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """Yield (event, data) pairs from a text/event-stream body."""
    event = "message"
    data: list[str] = []
    async for line in lines:
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


def _blob_from_node(node: Any) -> Optional[str]:
    if isinstance(node, dict):
        blob = node.get("data")
        return blob if isinstance(blob, str) else None
    return None


def _change_from_event(key: str, event: str, raw: str) -> Optional[ChangeEvent]:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        return None
    path = payload.get("path", "/")
    data = payload.get("data")
    if path == "/":
        if event == "patch" and not (isinstance(data, dict) and "data" in data):
            return None
        return ChangeEvent(key=key, value=_blob_from_node(data))
    if path == "/data":
        return ChangeEvent(key=key, value=data if isinstance(data, str) else None)
    return None


__all__ = ["FirebaseApiError", "FirebaseError", "FirebaseStorage"]
