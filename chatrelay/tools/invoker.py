"""
Tool invoker: executes an intercepted function call.

The model's streamed argument fragments are joined and parsed as a JSON
object, the caller's user id is added, and the result is POSTed to the
function's action URL. The action answers with the usual
{"code": 0, "message": ..., "data": ...} envelope; anything else is a
ToolInvocationError.
"""

from __future__ import annotations

import json
import logging
import time

import httpx

from chatrelay.errors import ChatError, ErrorKind
from chatrelay.storage.models import Function

logger = logging.getLogger(__name__)

SUCCESS_CODE = 0


def parse_arguments(fragments) -> dict:
    """Concatenate streamed argument fragments into a parameter dict."""
    raw = "".join(fragments).strip()
    if not raw:
        return {}
    try:
        params = json.loads(raw)
    except ValueError:
        logger.warning("Tool arguments are not valid JSON: %r", raw[:200])
        return {}
    return params if isinstance(params, dict) else {}


def _as_text(data) -> str:
    if isinstance(data, str):
        return data
    return json.dumps(data, ensure_ascii=False)


class ToolInvoker:
    """Calls tool action URLs. Not cancellable; bounded by its own timeout."""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    async def invoke(self, function: Function, fragments, user_id: int) -> str:
        """Run the tool and return its data as text. Raises ChatError(ToolInvocationError)."""
        params = parse_arguments(fragments)
        params["user_id"] = user_id
        logger.debug("Function name: %s, params: %s", function.name, params)

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    function.action,
                    json=params,
                    headers={"Authorization": function.token},
                )
            payload = resp.json()
        except httpx.HTTPError as e:
            raise ChatError(ErrorKind.TOOL_INVOCATION_ERROR, str(e)) from e
        except ValueError as e:
            raise ChatError(ErrorKind.TOOL_INVOCATION_ERROR, f"invalid response: {e}") from e
        finally:
            logger.info(
                "Tool '%s' finished in %.0fms", function.name, (time.monotonic() - start) * 1000
            )

        if not isinstance(payload, dict):
            raise ChatError(ErrorKind.TOOL_INVOCATION_ERROR, "invalid response")
        if payload.get("code") != SUCCESS_CODE:
            raise ChatError(
                ErrorKind.TOOL_INVOCATION_ERROR,
                str(payload.get("message") or "unknown error"),
            )
        return _as_text(payload.get("data"))
