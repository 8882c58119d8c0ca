"""
Completion gateway: one upstream chat-completions call per turn.

Works with any service that implements the OpenAI /v1/chat/completions
API. Picks the API key (model-bound, else least recently used of the right
type), checks its URL against the allow-list, and sends the request through
the key's proxy if it has one. The call is bound to a CancelToken so a stop
request can abort it while it connects or streams.

No retries: a failed call is the terminal error for the turn.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import urlparse

import httpx

from chatrelay.cancellation import CancelToken
from chatrelay.errors import ChatError, ErrorKind
from chatrelay.policy import ApiUrlPolicy
from chatrelay.storage.models import ApiKey, ChatModel

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/v1/chat/completions"


def endpoint_url(api_url: str) -> str:
    """A bare base URL gets the chat-completions path appended."""
    api_url = api_url.rstrip("/")
    if urlparse(api_url).path == "":
        return f"{api_url}{COMPLETIONS_PATH}"
    return api_url


class UpstreamResponse:
    """An open upstream response whose body has not been read yet."""

    def __init__(self, response: httpx.Response, token: CancelToken):
        self._response = response
        self._token = token
        self.status_code = response.status_code
        self.content_type = response.headers.get("content-type", "")

    @property
    def is_event_stream(self) -> bool:
        return "text/event-stream" in self.content_type

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    async def iter_lines(self) -> AsyncIterator[str]:
        """Body lines until EOF or cancellation, whichever comes first."""
        async for line in self._token.iterate(self._response.aiter_lines()):
            yield line

    async def read_text(self) -> str:
        body = await self._token.run(self._response.aread())
        return body.decode("utf-8", errors="replace")


class CompletionGateway:
    def __init__(
        self,
        store,
        policy: ApiUrlPolicy,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.policy = policy
        self.timeout = timeout
        self._transport = transport

    def select_key(self, model: ChatModel, key_type: str = "chat") -> ApiKey:
        key = None
        if model.key_id > 0:
            key = self.store.get_api_key(model.key_id)
        else:
            key = self.store.least_recently_used_key(key_type)
        if key is None:
            raise ChatError(
                ErrorKind.NO_AVAILABLE_KEY,
                "Sorry, there is no API key available. Please contact the administrator.",
            )
        return key

    def _touch(self, key: ApiKey):
        try:
            self.store.touch_api_key(key.id, int(time.time()))
        except sqlite3.Error as e:
            logger.warning("Failed to update last_used_at for key %s: %s", key.id, e)

    def _client(self, key: ApiKey) -> httpx.AsyncClient:
        proxy = key.proxy_url if len(key.proxy_url) > 5 else None
        return httpx.AsyncClient(timeout=self.timeout, proxy=proxy, transport=self._transport)

    @asynccontextmanager
    async def dispatch(
        self,
        body: dict,
        model: ChatModel,
        token: CancelToken,
        key_type: str = "chat",
    ) -> AsyncIterator[UpstreamResponse]:
        """
        Send the request and yield the open response (status 200 only).

        Raises ChatError: NoAvailableKey, KeyNotPermitted, Cancelled, or
        UpstreamHTTPError (non-200, or transport failure with status 0).
        """
        key = self.select_key(model, key_type)
        self.policy.check(key.api_url)
        url = endpoint_url(key.api_url)
        logger.debug("Chat request body: %s", body)
        logger.info(
            "Sending %s request, URL: %s, PROXY: %s, Model: %s",
            key.name or key.id, url, key.proxy_url, body.get("model"),
        )
        self._touch(key)

        t0 = time.monotonic()
        async with self._client(key) as client:
            request = client.build_request(
                "POST",
                url,
                json=body,
                headers={"Authorization": f"Bearer {key.value}"},
            )
            try:
                response = await token.run(client.send(request, stream=True))
            except httpx.HTTPError as e:
                logger.warning("Upstream request to %s failed: %s", url, e)
                raise ChatError(
                    ErrorKind.UPSTREAM_HTTP_ERROR,
                    f"Request to the upstream API failed: {e}",
                    status=0,
                ) from e
            logger.info("HTTP request finished in %.0fms", (time.monotonic() - t0) * 1000)

            try:
                if response.status_code != 200:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise ChatError(
                        ErrorKind.UPSTREAM_HTTP_ERROR,
                        f"OpenAI API request failed: {response.status_code}, {text}",
                        status=response.status_code,
                        body=text,
                    )
                yield UpstreamResponse(response, token)
            finally:
                await response.aclose()
